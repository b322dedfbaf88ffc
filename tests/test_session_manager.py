import asyncio
import unittest
from datetime import timedelta

from groupveil.crypto import DefaultCryptoProvider
from groupveil.exceptions import (
    AlreadyInitializedError,
    CryptoProviderError,
    DecryptionError,
    GroupNotInitializedError,
    InvalidRotationReasonError,
)
from groupveil.session import (
    EncryptedMessage,
    KeyNotFound,
    RotationPolicy,
    RotationReason,
    SessionKeyManager,
)
from tests.helpers import AsyncCryptoProvider, FailingCryptoProvider, FakeClock, StubCryptoProvider


class TestSessionKeyManager(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.mgr = SessionKeyManager(
            StubCryptoProvider(),
            policy=RotationPolicy(max_messages=2, max_duration=timedelta(hours=1)),
            clock=self.clock,
        )
        await self.mgr.initialize_group("g1")

    async def test_initialize_twice_fails(self):
        with self.assertRaises(AlreadyInitializedError):
            await self.mgr.initialize_group("g1")

    async def test_initial_state(self):
        self.assertEqual(self.mgr.current_generation("g1"), 0)
        self.assertEqual(self.mgr.history("g1"), [])
        meta = self.mgr.key_metadata("g1")
        self.assertEqual(len(meta), 1)
        self.assertEqual(meta[0]["message_count"], 0)
        self.assertEqual(meta[0]["expires_at"], (self.clock.now + timedelta(hours=1)).isoformat())
        self.assertNotIn("key_material", meta[0])

    async def test_uninitialized_group(self):
        with self.assertRaises(GroupNotInitializedError):
            await self.mgr.encrypt("nope", b"x")
        with self.assertRaises(GroupNotInitializedError):
            await self.mgr.rotate("nope", "manual")
        with self.assertRaises(GroupNotInitializedError):
            self.mgr.current_generation("nope")
        with self.assertRaises(GroupNotInitializedError):
            self.mgr.history("nope")

    async def test_roundtrip(self):
        msg = await self.mgr.encrypt("g1", "hello")
        self.assertIsInstance(msg, EncryptedMessage)
        self.assertEqual(await self.mgr.decrypt("g1", msg), b"hello")

    async def test_rotation_on_max_messages(self):
        first = await self.mgr.encrypt("g1", b"1")
        second = await self.mgr.encrypt("g1", b"2")
        self.assertEqual((first.generation, second.generation), (0, 0))
        self.assertEqual(self.mgr.history("g1"), [])

        third = await self.mgr.encrypt("g1", b"3")
        self.assertEqual(third.generation, 1)
        history = self.mgr.history("g1")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].reason, RotationReason.MAX_MESSAGES)
        self.assertEqual(history[0].old_key_id, first.key_id)
        self.assertEqual(history[0].new_key_id, third.key_id)
        self.assertEqual(history[0].generation, 1)
        self.assertEqual(self.mgr.key_metadata("g1")[-1]["message_count"], 1)

    async def test_rotation_on_expiry(self):
        await self.mgr.encrypt("g1", b"1")
        self.clock.advance(hours=1)
        msg = await self.mgr.encrypt("g1", b"2")
        self.assertEqual(msg.generation, 1)
        self.assertEqual(self.mgr.history("g1")[-1].reason, RotationReason.MAX_DURATION)

    async def test_old_messages_decrypt_after_rotations(self):
        old = await self.mgr.encrypt("g1", b"gen zero")
        for _ in range(3):
            await self.mgr.rotate("g1", RotationReason.MANUAL)
        self.assertEqual(self.mgr.current_generation("g1"), 3)
        self.assertEqual(await self.mgr.decrypt("g1", old), b"gen zero")

    async def test_nonces_are_fresh(self):
        a = await self.mgr.encrypt("g1", b"same")
        b = await self.mgr.encrypt("g1", b"same")
        self.assertEqual(a.key_id, b.key_id)
        self.assertNotEqual(a.nonce, b.nonce)
        self.assertNotEqual(a.content, b.content)

    async def test_rotate_increases_generation_and_logs(self):
        e1 = await self.mgr.rotate("g1", "manual")
        e2 = await self.mgr.rotate("g1", RotationReason.MEMBER_LEAVE)
        self.assertEqual((e1.generation, e2.generation), (1, 2))
        self.assertEqual(e2.old_key_id, e1.new_key_id)
        self.assertEqual([e.reason for e in self.mgr.history("g1")], [RotationReason.MANUAL, RotationReason.MEMBER_LEAVE])

    async def test_history_is_a_copy(self):
        await self.mgr.rotate("g1")
        self.mgr.history("g1").clear()
        self.assertEqual(len(self.mgr.history("g1")), 1)

    async def test_invalid_reason(self):
        with self.assertRaises(InvalidRotationReasonError):
            await self.mgr.rotate("g1", "because")
        self.assertEqual(self.mgr.current_generation("g1"), 0)

    async def test_unknown_key_is_an_outcome(self):
        msg = await self.mgr.encrypt("g1", b"x")
        forged = EncryptedMessage(msg.content, "key_unknown", msg.nonce, 0, msg.sender_commitment, msg.timestamp)
        outcome = await self.mgr.decrypt("g1", forged)
        self.assertIsInstance(outcome, KeyNotFound)
        self.assertFalse(outcome)
        self.assertEqual(outcome.key_id, "key_unknown")

    async def test_tampered_ciphertext_raises(self):
        msg = await self.mgr.encrypt("g1", b"x")
        bad = EncryptedMessage(bytes([msg.content[0] ^ 0xFF]) + msg.content[1:], msg.key_id, msg.nonce, 0, msg.sender_commitment, msg.timestamp)
        with self.assertRaises(DecryptionError):
            await self.mgr.decrypt("g1", bad)

    async def test_groups_are_isolated(self):
        await self.mgr.initialize_group("g2")
        msg = await self.mgr.encrypt("g1", b"x")
        self.assertIsInstance(await self.mgr.decrypt("g2", msg), KeyNotFound)
        await self.mgr.rotate("g2")
        self.assertEqual(self.mgr.current_generation("g1"), 0)
        self.assertEqual(self.mgr.groups(), ["g1", "g2"])

    async def test_bounded_previous_keys(self):
        mgr = SessionKeyManager(StubCryptoProvider(), policy=RotationPolicy(max_previous_keys=1))
        await mgr.initialize_group("g")
        oldest = await mgr.encrypt("g", b"a")
        await mgr.rotate("g")
        middle = await mgr.encrypt("g", b"b")
        await mgr.rotate("g")
        self.assertIsInstance(await mgr.decrypt("g", oldest), KeyNotFound)
        self.assertEqual(await mgr.decrypt("g", middle), b"b")

    async def test_membership_hooks_follow_policy(self):
        event = await self.mgr.member_joined("g1")
        self.assertEqual(event.reason, RotationReason.MEMBER_JOIN)
        event = await self.mgr.member_left("g1")
        self.assertEqual(event.reason, RotationReason.MEMBER_LEAVE)

        quiet = SessionKeyManager(
            StubCryptoProvider(),
            policy=RotationPolicy(rotate_on_member_join=False, rotate_on_member_leave=False),
        )
        await quiet.initialize_group("g")
        self.assertIsNone(await quiet.member_joined("g"))
        self.assertIsNone(await quiet.member_left("g"))
        self.assertEqual(quiet.current_generation("g"), 0)

    async def test_teardown_then_reinitialize(self):
        await self.mgr.rotate("g1")
        await self.mgr.teardown_group("g1")
        with self.assertRaises(GroupNotInitializedError):
            self.mgr.current_generation("g1")
        self.assertEqual(len(self.mgr.history("g1")), 1)
        await self.mgr.initialize_group("g1")
        self.assertEqual(self.mgr.current_generation("g1"), 0)

    async def test_rotation_evicts_shared_secret_cache_without_rekeying(self):
        crypto = DefaultCryptoProvider()
        alice = SessionKeyManager(crypto)
        bob = SessionKeyManager(crypto)
        await alice.initialize_group("g")
        await bob.initialize_group("g")
        s1 = await alice.derive_shared_secret("g", bob.public_key("g"))
        self.assertEqual(s1, await bob.derive_shared_secret("g", alice.public_key("g")))
        self.assertIs(s1, await alice.derive_shared_secret("g", bob.public_key("g")))
        await alice.rotate("g")
        again = await alice.derive_shared_secret("g", bob.public_key("g"))
        self.assertIsNot(s1, again)
        self.assertEqual(s1, again)

    async def test_concurrent_encrypts_respect_thresholds(self):
        messages = await asyncio.gather(*(self.mgr.encrypt("g1", str(i)) for i in range(6)))
        generations = sorted(m.generation for m in messages)
        self.assertEqual(generations, [0, 0, 1, 1, 2, 2])
        self.assertEqual(len(self.mgr.history("g1")), 2)

    async def test_async_provider(self):
        mgr = SessionKeyManager(AsyncCryptoProvider(), policy=RotationPolicy(max_messages=1))
        await mgr.initialize_group("g")
        a = await mgr.encrypt("g", b"a")
        b = await mgr.encrypt("g", b"b")
        self.assertEqual((a.generation, b.generation), (0, 1))
        self.assertEqual(await mgr.decrypt("g", a), b"a")

    async def test_sender_commitment_includes_sender(self):
        mgr = SessionKeyManager(StubCryptoProvider(), clock=self.clock, sender_id="alice")
        await mgr.initialize_group("g1")
        with_sender = await mgr.encrypt("g1", b"x")
        without = await self.mgr.encrypt("g1", b"x")
        self.assertNotEqual(with_sender.sender_commitment, without.sender_commitment)


class TestPrimitiveFailures(unittest.IsolatedAsyncioTestCase):
    async def test_encrypt_failure_leaves_counter_untouched(self):
        crypto = FailingCryptoProvider("aead_encrypt")
        mgr = SessionKeyManager(crypto, policy=RotationPolicy(max_messages=2))
        await mgr.initialize_group("g")
        await mgr.encrypt("g", b"1")
        crypto.armed = True
        with self.assertRaises(CryptoProviderError):
            await mgr.encrypt("g", b"2")
        self.assertEqual(mgr.key_metadata("g")[0]["message_count"], 1)

    async def test_failure_during_policy_rotation_commits_nothing(self):
        crypto = FailingCryptoProvider("aead_encrypt")
        mgr = SessionKeyManager(crypto, policy=RotationPolicy(max_messages=1))
        await mgr.initialize_group("g")
        await mgr.encrypt("g", b"1")
        crypto.armed = True
        with self.assertRaises(CryptoProviderError):
            await mgr.encrypt("g", b"2")
        self.assertEqual(mgr.current_generation("g"), 0)
        self.assertEqual(mgr.history("g"), [])
        crypto.armed = False
        msg = await mgr.encrypt("g", b"2")
        self.assertEqual(msg.generation, 1)
        self.assertEqual(len(mgr.history("g")), 1)

    async def test_rotate_failure_keeps_current_key(self):
        crypto = FailingCryptoProvider("kdf_expand")
        mgr = SessionKeyManager(crypto)
        await mgr.initialize_group("g")
        before = mgr.key_metadata("g")
        crypto.armed = True
        with self.assertRaises(CryptoProviderError):
            await mgr.rotate("g")
        self.assertEqual(mgr.key_metadata("g"), before)
        self.assertEqual(mgr.history("g"), [])

    async def test_initialize_failure_stores_nothing(self):
        crypto = FailingCryptoProvider("generate_key_pair")
        crypto.armed = True
        mgr = SessionKeyManager(crypto)
        with self.assertRaises(CryptoProviderError):
            await mgr.initialize_group("g")
        self.assertEqual(mgr.groups(), [])
        crypto.armed = False
        await mgr.initialize_group("g")
        self.assertEqual(mgr.groups(), ["g"])


class TestTeardownWhileBusy(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.mgr = SessionKeyManager(AsyncCryptoProvider(), policy=RotationPolicy(max_messages=1))
        await self.mgr.initialize_group("g")

    async def test_teardown_waits_for_running_rotation(self):
        rotation = asyncio.create_task(self.mgr.rotate("g"))
        await asyncio.sleep(0)
        await self.mgr.teardown_group("g")
        event = await rotation
        self.assertEqual(event.generation, 1)
        self.assertEqual(self.mgr.groups(), [])
        self.assertEqual(self.mgr.history("g"), [event])

    async def test_work_queued_behind_teardown_sees_missing_group(self):
        await self.mgr.encrypt("g", b"1")
        first = asyncio.create_task(self.mgr.encrypt("g", b"2"))
        await asyncio.sleep(0)
        teardown = asyncio.create_task(self.mgr.teardown_group("g"))
        second = asyncio.create_task(self.mgr.encrypt("g", b"3"))
        third = asyncio.create_task(self.mgr.rotate("g"))
        results = await asyncio.gather(first, teardown, second, third, return_exceptions=True)

        self.assertIsInstance(results[0], EncryptedMessage)
        self.assertEqual(results[0].generation, 1)
        self.assertIsNone(results[1])
        self.assertIsInstance(results[2], GroupNotInitializedError)
        self.assertIsInstance(results[3], GroupNotInitializedError)

    async def test_restore_waits_for_running_initialization(self):
        backup = await self.mgr.backup_keys("pw")
        other = SessionKeyManager(AsyncCryptoProvider())
        init = asyncio.create_task(other.initialize_group("g"))
        await asyncio.sleep(0)
        with self.assertRaises(AlreadyInitializedError):
            await other.restore_keys(backup, "pw")
        await init
        self.assertEqual(other.current_generation("g"), 0)


if __name__ == "__main__":
    unittest.main()
