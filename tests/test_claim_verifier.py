"""Tests for the claim verifier and token vault — proves one-shot claim invariants."""

import threading
from datetime import datetime, timezone
from typing import Optional

import pytest

from minnow.claims.vault import InMemoryTokenVault, TokenVault
from minnow.claims.verifier import ClaimVerifier
from minnow.crypto.commitment_builder import CommitmentBuilder, CommitmentTree
from minnow.errors import (
    AlreadyClaimed,
    AlreadyCommitted,
    AuditFailed,
    InvalidAmount,
    InvalidProof,
    NoCommitment,
    NotAuthorized,
    NotFound,
    TransferFailed,
)
from minnow.models.commitment import ClaimRecord, Commitment
from minnow.pond.ledger import ONE_ETHER, DepositLedger


TOKEN = "0x6fe88a211863d0d818608036880c9a4b0ea86795"
OPERATOR = "0x" + "aa" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20
CAROL = "0x" + "33" * 20
POINT_FOUR = 4 * 10**17


def _now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _tree() -> CommitmentTree:
    ledger = DepositLedger(close_threshold=ONE_ETHER)
    for addr in (ALICE, BOB, CAROL):
        ledger.deposit(addr, POINT_FOUR)
    return CommitmentBuilder().build(ledger.get_period(0))


@pytest.fixture
def tree() -> CommitmentTree:
    return _tree()


@pytest.fixture
def vault() -> InMemoryTokenVault:
    return InMemoryTokenVault(TOKEN, reserve=5 * ONE_ETHER)


@pytest.fixture
def verifier(vault: InMemoryTokenVault, tree: CommitmentTree) -> ClaimVerifier:
    verifier = ClaimVerifier(vault)
    verifier.register_commitment(0, tree.root, leaf_count=tree.leaf_count, now=_now())
    return verifier


class TestRegistration:
    def test_register_and_get(self, vault: InMemoryTokenVault, tree: CommitmentTree) -> None:
        verifier = ClaimVerifier(vault)
        commitment = verifier.register_commitment(0, tree.hex_root, leaf_count=3, now=_now())
        assert commitment.root == tree.root
        assert commitment.registered_at == _now()
        assert verifier.get_commitment(0) == commitment
        assert verifier.has_commitment(0)

    def test_register_is_one_shot(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(AlreadyCommitted):
            verifier.register_commitment(0, b"\x00" * 32)
        assert verifier.get_commitment(0).root == tree.root

    def test_unknown_commitment(self, verifier: ClaimVerifier) -> None:
        with pytest.raises(NoCommitment):
            verifier.get_commitment(5)

    def test_no_commitment_is_not_found(self) -> None:
        assert issubclass(NoCommitment, NotFound)

    def test_bad_root_rejected(self, vault: InMemoryTokenVault) -> None:
        verifier = ClaimVerifier(vault)
        with pytest.raises(ValueError):
            verifier.register_commitment(0, b"\x01" * 31)
        assert not verifier.has_commitment(0)

    def test_operator_only(self, vault: InMemoryTokenVault, tree: CommitmentTree) -> None:
        verifier = ClaimVerifier(vault, operator=OPERATOR)
        with pytest.raises(NotAuthorized):
            verifier.register_commitment(0, tree.root, caller=ALICE)
        with pytest.raises(NotAuthorized):
            verifier.register_commitment(0, tree.root)
        verifier.register_commitment(0, tree.root, caller=OPERATOR.upper().replace("0X", "0x"))
        assert verifier.has_commitment(0)

    def test_pool_requires_total(self, vault: InMemoryTokenVault, tree: CommitmentTree) -> None:
        verifier = ClaimVerifier(vault)
        with pytest.raises(ValueError):
            verifier.register_commitment(0, tree.root, payout_pool=100)

    def test_periods_are_independent(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        verifier.register_commitment(1, tree.root)
        assert verifier.get_commitment(1).root == verifier.get_commitment(0).root


class TestClaims:
    def test_each_depositor_claims_once(
        self,
        verifier: ClaimVerifier,
        tree: CommitmentTree,
        vault: InMemoryTokenVault,
    ) -> None:
        for addr in (ALICE, BOB, CAROL):
            record = verifier.claim(0, addr, tree.proof_for(addr), POINT_FOUR, now=_now())
            assert record.claimed
            assert record.amount_paid == POINT_FOUR
            assert verifier.is_claimed(0, addr)
            assert vault.balance_of(addr) == POINT_FOUR

        for addr in (ALICE, BOB, CAROL):
            with pytest.raises(AlreadyClaimed):
                verifier.claim(0, addr, tree.proof_for(addr), POINT_FOUR)
        assert vault.reserve == 5 * ONE_ETHER - 3 * POINT_FOUR

    def test_hex_proof_accepted(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        doc = tree.to_distribution()
        proof = doc["claims"][BOB]["proof"]
        record = verifier.claim(0, BOB, proof, POINT_FOUR)
        assert record.depositor == BOB

    def test_no_commitment(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(NoCommitment):
            verifier.claim(3, ALICE, tree.proof_for(ALICE), POINT_FOUR)

    def test_wrong_entitlement(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(InvalidProof):
            verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR + 1)
        assert not verifier.is_claimed(0, ALICE)

    def test_negative_entitlement(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(InvalidAmount):
            verifier.claim(0, ALICE, tree.proof_for(ALICE), -1)

    def test_someone_elses_proof(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(InvalidProof):
            verifier.claim(0, ALICE, tree.proof_for(BOB), POINT_FOUR)

    def test_non_depositor(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(InvalidProof):
            verifier.claim(0, "0x" + "44" * 20, tree.proof_for(ALICE), POINT_FOUR)

    @pytest.mark.parametrize("byte_index", [0, 15, 31])
    def test_tampered_proof(
        self, verifier: ClaimVerifier, tree: CommitmentTree, byte_index: int
    ) -> None:
        proof = tree.proof_for(ALICE)
        for element in range(len(proof)):
            bad = bytearray(proof[element])
            bad[byte_index] ^= 0xFF
            tampered = list(proof)
            tampered[element] = bytes(bad)
            with pytest.raises(InvalidProof):
                verifier.claim(0, ALICE, tampered, POINT_FOUR)
        assert not verifier.is_claimed(0, ALICE)

    def test_malformed_proof_element(self, verifier: ClaimVerifier) -> None:
        with pytest.raises(InvalidProof):
            verifier.claim(0, ALICE, ["0x1234"], POINT_FOUR)

    def test_missing_proof(self, verifier: ClaimVerifier) -> None:
        with pytest.raises(InvalidProof):
            verifier.claim(0, ALICE, None, POINT_FOUR)
        with pytest.raises(InvalidProof):
            verifier.claim(0, ALICE, [None], POINT_FOUR)

    def test_unhashable_period_index(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(NoCommitment):
            verifier.claim([0], ALICE, tree.proof_for(ALICE), POINT_FOUR)
        assert not verifier.has_commitment([0])

    def test_reads_do_not_allocate_locks(self, verifier: ClaimVerifier) -> None:
        for i in range(50):
            address = "0x" + f"{i:040x}"
            assert not verifier.is_claimed(0, address)
            assert verifier.get_claim(0, address) is None
        assert verifier._key_locks == {}

    def test_truncated_proof(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        with pytest.raises(InvalidProof):
            verifier.claim(0, ALICE, tree.proof_for(ALICE)[:-1], POINT_FOUR)

    def test_single_leaf_empty_proof(self, vault: InMemoryTokenVault) -> None:
        ledger = DepositLedger(close_threshold=ONE_ETHER)
        ledger.deposit(ALICE, ONE_ETHER)
        tree = CommitmentBuilder().build(ledger.get_period(0))
        verifier = ClaimVerifier(vault)
        verifier.register_commitment(0, tree.root)
        record = verifier.claim(0, ALICE, [], ONE_ETHER)
        assert record.amount_paid == ONE_ETHER
        with pytest.raises(AlreadyClaimed):
            verifier.claim(0, ALICE, [], ONE_ETHER)


class TestPayoutPool:
    def test_pro_rata_payout(self, tree: CommitmentTree) -> None:
        vault = InMemoryTokenVault(TOKEN, reserve=3000)
        verifier = ClaimVerifier(vault)
        verifier.register_commitment(
            0, tree.root, payout_pool=3000, total_entitled=tree.total_entitled
        )
        for addr in (ALICE, BOB, CAROL):
            record = verifier.claim(0, addr, tree.proof_for(addr), POINT_FOUR)
            assert record.amount_paid == 1000
        assert vault.balance_of(ALICE) == vault.balance_of(BOB) == vault.balance_of(CAROL)
        assert vault.reserve == 0


class _FailingVault:
    """Vault that fails the first ``failures`` transfers."""

    def __init__(self, failures: int, error: Optional[Exception] = None) -> None:
        self.inner = InMemoryTokenVault(TOKEN, reserve=5 * ONE_ETHER)
        self.failures = failures
        self.error = error or TransferFailed("rail down")

    @property
    def token_address(self) -> str:
        return self.inner.token_address

    def transfer(self, recipient: str, amount: int) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        self.inner.transfer(recipient, amount)


class TestTransferAtomicity:
    def test_failing_vault_is_a_token_vault(self) -> None:
        assert isinstance(_FailingVault(0), TokenVault)
        assert isinstance(InMemoryTokenVault(TOKEN), TokenVault)

    def test_failed_transfer_leaves_claim_unset(self, tree: CommitmentTree) -> None:
        vault = _FailingVault(failures=1)
        verifier = ClaimVerifier(vault)
        verifier.register_commitment(0, tree.root)

        with pytest.raises(TransferFailed):
            verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR)
        assert not verifier.is_claimed(0, ALICE)
        assert verifier.get_claim(0, ALICE) is None

        # Retry is safe and pays exactly once
        verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR)
        assert vault.inner.balance_of(ALICE) == POINT_FOUR

    def test_unexpected_vault_error_becomes_transfer_failed(self, tree: CommitmentTree) -> None:
        vault = _FailingVault(failures=1, error=RuntimeError("boom"))
        verifier = ClaimVerifier(vault)
        verifier.register_commitment(0, tree.root)
        with pytest.raises(TransferFailed, match="boom"):
            verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR)
        assert not verifier.is_claimed(0, ALICE)

    def test_insufficient_reserve(self, tree: CommitmentTree) -> None:
        vault = InMemoryTokenVault(TOKEN, reserve=POINT_FOUR - 1)
        verifier = ClaimVerifier(vault)
        verifier.register_commitment(0, tree.root)
        with pytest.raises(TransferFailed, match="Insufficient"):
            verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR)
        assert not verifier.is_claimed(0, ALICE)
        assert vault.reserve == POINT_FOUR - 1


class _ReentrantVault:
    """Vault that tries to claim again from inside the transfer."""

    def __init__(self, tree: CommitmentTree) -> None:
        self.inner = InMemoryTokenVault(TOKEN, reserve=5 * ONE_ETHER)
        self.tree = tree
        self.verifier: Optional[ClaimVerifier] = None
        self.reentry_errors: list[Exception] = []

    @property
    def token_address(self) -> str:
        return self.inner.token_address

    def transfer(self, recipient: str, amount: int) -> None:
        try:
            self.verifier.claim(0, recipient, self.tree.proof_for(recipient), POINT_FOUR)
        except AlreadyClaimed as e:
            self.reentry_errors.append(e)
        self.inner.transfer(recipient, amount)


class TestReentrancy:
    def test_reentrant_claim_sees_claimed(self, tree: CommitmentTree) -> None:
        vault = _ReentrantVault(tree)
        verifier = ClaimVerifier(vault)
        vault.verifier = verifier
        verifier.register_commitment(0, tree.root)

        verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR)
        assert len(vault.reentry_errors) == 1
        assert vault.inner.balance_of(ALICE) == POINT_FOUR

    def test_parallel_claims_pay_once(self, tree: CommitmentTree) -> None:
        vault = InMemoryTokenVault(TOKEN, reserve=5 * ONE_ETHER)
        verifier = ClaimVerifier(vault)
        verifier.register_commitment(0, tree.root)
        proof = tree.proof_for(BOB)
        outcomes: list[str] = []
        outcomes_lock = threading.Lock()

        def run() -> None:
            try:
                verifier.claim(0, BOB, proof, POINT_FOUR)
                result = "ok"
            except AlreadyClaimed:
                result = "dup"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=run) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("dup") == 15
        assert vault.balance_of(BOB) == POINT_FOUR


class TestVault:
    def test_fund_and_transfer(self) -> None:
        vault = InMemoryTokenVault(TOKEN)
        vault.fund(100)
        vault.transfer(ALICE, 40)
        assert vault.reserve == 60
        assert vault.balance_of(ALICE) == 40

    def test_fund_rejects_non_positive(self) -> None:
        vault = InMemoryTokenVault(TOKEN)
        with pytest.raises(InvalidAmount):
            vault.fund(0)

    def test_transfer_rejects_non_positive(self) -> None:
        vault = InMemoryTokenVault(TOKEN, reserve=10)
        with pytest.raises(TransferFailed):
            vault.transfer(ALICE, 0)
        assert vault.reserve == 10


class TestSettlementHooks:
    def test_settle_hook_runs_before_transfer(
        self, verifier: ClaimVerifier, vault: InMemoryTokenVault, tree: CommitmentTree
    ) -> None:
        seen: list[tuple[bool, int]] = []

        def settle(record: ClaimRecord) -> None:
            seen.append((verifier.is_claimed(0, ALICE), vault.balance_of(ALICE)))

        verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR, on_settle=settle)
        assert seen == [(True, 0)]
        assert vault.balance_of(ALICE) == POINT_FOUR

    def test_settle_hook_failure_refuses_claim(
        self, verifier: ClaimVerifier, vault: InMemoryTokenVault, tree: CommitmentTree
    ) -> None:
        def settle(record: ClaimRecord) -> None:
            raise AuditFailed("log unavailable")

        with pytest.raises(AuditFailed):
            verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR, on_settle=settle)
        assert not verifier.is_claimed(0, ALICE)
        assert vault.balance_of(ALICE) == 0

        verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR)
        assert vault.balance_of(ALICE) == POINT_FOUR

    def test_register_hook_failure_keeps_period_open(
        self, vault: InMemoryTokenVault, tree: CommitmentTree
    ) -> None:
        verifier = ClaimVerifier(vault)

        def register(commitment: Commitment) -> None:
            raise AuditFailed("log unavailable")

        with pytest.raises(AuditFailed):
            verifier.register_commitment(0, tree.root, on_register=register)
        assert not verifier.has_commitment(0)
        verifier.register_commitment(0, tree.root)
        assert verifier.has_commitment(0)

    def test_revoke_claim(self, verifier: ClaimVerifier, tree: CommitmentTree) -> None:
        verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR)
        verifier.revoke_claim(0, ALICE)
        assert not verifier.is_claimed(0, ALICE)
        with pytest.raises(NotFound):
            verifier.revoke_claim(0, ALICE)

    def test_revert_hook_runs_after_failed_transfer(self, tree: CommitmentTree) -> None:
        verifier = ClaimVerifier(_FailingVault(failures=1, error=RuntimeError("boom")))
        verifier.register_commitment(0, tree.root)
        reverted: list[tuple[bool, str]] = []

        def revert(record: ClaimRecord, failure: TransferFailed) -> None:
            reverted.append((verifier.is_claimed(0, ALICE), type(failure).__name__))

        with pytest.raises(TransferFailed):
            verifier.claim(0, ALICE, tree.proof_for(ALICE), POINT_FOUR, on_revert=revert)
        assert reverted == [(False, "TransferFailed")]
