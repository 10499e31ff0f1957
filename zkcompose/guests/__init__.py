"""
Development guests.

Deterministic programs that stand in for compiled zkVM guests during
development and testing. A guest receives a `GuestEnv`, reads its inputs,
optionally verifies claims of other programs, and commits its journal.

    mod-exp   private (n, e, x)          -> commits (n, e, x^e mod n)
    is-even   public mod-exp journal     -> verifies the mod-exp claim,
                                            commits bool(result is even)

Binaries are fixed byte strings, so image ids are stable across runs.
"""

from typing import Callable, Dict, List, Mapping, Sequence, Tuple

from zkcompose.core import abi
from zkcompose.core.errors import ExecutionFault
from zkcompose.core.receipt import Assumption, Claim

MOD_EXP = "mod-exp"
IS_EVEN = "is-even"

GUEST_BINARIES: Dict[str, bytes] = {
    MOD_EXP: b"zkcompose-guest\x00mod-exp\x00v1",
    IS_EVEN: b"zkcompose-guest\x00is-even\x00v1",
}


class GuestEnv:
    """Execution environment handed to a guest."""

    def __init__(
        self,
        private_input: bytes = b"",
        public_input: bytes = b"",
        assumptions: Sequence[Assumption] = (),
        image_ids: Mapping[str, bytes] = None,
    ):
        self.private_input = private_input
        self.public_input = public_input
        self.assumptions = tuple(assumptions)
        self.image_ids = dict(image_ids or {})
        self.journal = bytearray()
        self.resolved: List[Claim] = []
        self.unresolved: List[Claim] = []

    def commit(self, data: bytes) -> None:
        """Append data to the public journal."""
        self.journal.extend(data)

    def require(self, condition: bool, message: str) -> None:
        """Abort the guest with an execution fault unless condition holds."""
        if not condition:
            raise ExecutionFault(message)

    def image_id(self, name: str) -> bytes:
        if name not in self.image_ids:
            raise ExecutionFault(f"guest references unknown program {name!r}")
        return self.image_ids[name]

    def verify(self, image_id: bytes, journal: bytes) -> None:
        """
        Verify that `image_id` produced `journal`.

        The claim must be among the supplied assumptions. It is recorded as
        resolved when a matching receipt came with it, unresolved otherwise.
        """
        claim = Claim.for_journal(image_id, journal)
        for assumption in self.assumptions:
            if assumption.claim == claim:
                if assumption.is_resolvable:
                    self.resolved.append(claim)
                else:
                    self.unresolved.append(claim)
                return
        raise ExecutionFault(f"no assumption matches claim {claim.short()}")


GuestFn = Callable[[GuestEnv], None]


def mod_exp(env: GuestEnv) -> None:
    try:
        n, e, x = abi.decode(["uint256", "uint256", "uint256"], env.private_input)
    except ValueError as exc:
        raise ExecutionFault(f"mod-exp input is not (n, e, x): {exc}")
    env.require(n > 0, "modulus must be positive")
    env.commit(abi.encode(["uint256", "uint256", "uint256"], [n, e, pow(x, e, n)]))


def is_even(env: GuestEnv) -> None:
    try:
        _, _, result = abi.decode(["uint256", "uint256", "uint256"], env.public_input)
    except ValueError as exc:
        raise ExecutionFault(f"is-even input is not a mod-exp journal: {exc}")
    env.verify(env.image_id(MOD_EXP), env.public_input)
    env.commit(abi.encode(["bool"], [result % 2 == 0]))


GUESTS: Dict[str, GuestFn] = {
    MOD_EXP: mod_exp,
    IS_EVEN: is_even,
}


def run_guest(
    guest: GuestFn,
    private_input: bytes = b"",
    public_input: bytes = b"",
    assumptions: Sequence[Assumption] = (),
    image_ids: Mapping[str, bytes] = None,
) -> Tuple[bytes, Tuple[Claim, ...], Tuple[Claim, ...]]:
    """
    Run a guest to completion.

    Returns:
        (journal, resolved_claims, unresolved_claims)

    Raises:
        ExecutionFault: if the guest aborts
    """
    env = GuestEnv(
        private_input=private_input,
        public_input=public_input,
        assumptions=assumptions,
        image_ids=image_ids,
    )
    guest(env)
    return bytes(env.journal), tuple(env.resolved), tuple(env.unresolved)


def encode_mod_exp_input(n: int, e: int, x: int) -> bytes:
    """Private input layout expected by the mod-exp guest."""
    return abi.encode(["uint256", "uint256", "uint256"], [n, e, x])


def decode_is_even_journal(journal: bytes) -> bool:
    (even,) = abi.decode(["bool"], journal)
    return even
