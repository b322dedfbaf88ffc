"""Prove membership, derive a nullifier and send an encrypted group message."""
import asyncio
import logging

from groupveil import (
    DefaultCryptoProvider,
    RotationPolicy,
    SessionKeyManager,
    build,
    derive_nullifier,
    generate_seed,
    prove_membership,
    verify_membership,
)
from groupveil.accumulator import to_verifier_inputs


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    members = ["aleo1abc", "aleo1def", "aleo1ghi", "aleo1jkl"]
    tree = build(members)
    proof = prove_membership(tree, "aleo1ghi")
    if not proof:
        raise SystemExit("not a member")
    print("root:", tree.root)
    print("proof verifies:", verify_membership(proof))
    print("verifier inputs:", to_verifier_inputs(proof))

    seed = generate_seed()
    print("nullifier:", derive_nullifier(seed, "group_1", "feedback_1"))

    manager = SessionKeyManager(DefaultCryptoProvider(), policy=RotationPolicy(max_messages=2))
    await manager.initialize_group("group_1")
    sent = [await manager.encrypt("group_1", f"message {i}") for i in range(3)]
    for msg in sent:
        print(msg.generation, await manager.decrypt("group_1", msg))
    for event in manager.history("group_1"):
        print(event.to_dict())


if __name__ == "__main__":
    asyncio.run(main())
