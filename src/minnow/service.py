"""Minnow service — unified facade over the pond, commitments and claims.

This is the primary interface for programmatic access to Minnow.
It orchestrates all subsystems:
- Deposit ledger (deposits, period rollover, period reads)
- Commitment building (Merkle trees over closed periods)
- Claim verification (root registration, proof-gated payouts)
- Persistence (append-only audit log, replay on startup)

All operations produce typed results; domain errors never escape as
exceptions. Deposits, registrations and claim settlements are audited
before they take effect, so a change that cannot be logged is refused.
Records written after the fact (period closure, rejected claims and the
compensating record for a failed transfer) never undo the change; if
such a write fails the service is flagged as degraded and the result
carries a warning.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from minnow.claims.vault import InMemoryTokenVault, TokenVault
from minnow.claims.verifier import ClaimVerifier
from minnow.config import MinnowConfig
from minnow.crypto.commitment_builder import (
    CommitmentBuilder,
    CommitmentTree,
    pro_rata_entitlements,
)
from minnow.crypto.encoding import check_uint256, normalize_address, to_hash_bytes
from minnow.errors import (
    AlreadyCommitted,
    AuditFailed,
    MinnowError,
    NotFound,
    PeriodNotClosed,
    TransferFailed,
)
from minnow.models.commitment import ClaimRecord, Commitment
from minnow.models.period import Period, PeriodStatus
from minnow.persistence.event_log import EventKind, EventLog, EventRecord
from minnow.pond.ledger import DepositLedger
from minnow.operations import (
    BuildCommitmentRequest,
    ClaimRequest,
    DepositRequest,
    GetDepositorsRequest,
    GetPeriodRequest,
    RegisterCommitmentRequest,
    Request,
    TotalPeriodsRequest,
)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class MinnowService:
    """Pond and claim facade.

    Usage:
        config = MinnowConfig(token_address="0x6fe8...", operator="0xOp...")
        service = MinnowService(config)

        service.deposit("0xA...", 4 * 10**17)
        service.build_commitment(0)
        service.register_commitment(0, caller="0xOp...")
        service.claim(0, "0xA...", entitlement, proof)

    Persistence (optional):
        service = MinnowService(config, event_log=EventLog(path))
        # An existing log is replayed to rebuild ledger and claim state.
    """

    def __init__(
        self,
        config: MinnowConfig,
        vault: Optional[TokenVault] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._config = config
        if event_log is None and config.event_log_path is not None:
            event_log = EventLog(storage_path=config.event_log_path)
        self._event_log = event_log

        self._ledger = DepositLedger(close_threshold=config.close_threshold)
        self._builder = CommitmentBuilder()
        self._vault = vault if vault is not None else InMemoryTokenVault(config.token_address)
        self._verifier = ClaimVerifier(self._vault, operator=config.operator)
        self._trees: dict[int, CommitmentTree] = {}

        # Single writer for ledger mutations and their audit records
        self._lock = threading.RLock()
        self._audit_lock = threading.Lock()
        self._event_counter = event_log.count if event_log is not None else 0
        self._audit_degraded = False

        if event_log is not None and event_log.count:
            self._replay(event_log)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> MinnowConfig:
        return self._config

    @property
    def ledger(self) -> DepositLedger:
        return self._ledger

    @property
    def verifier(self) -> ClaimVerifier:
        return self._verifier

    @property
    def vault(self) -> TokenVault:
        return self._vault

    @property
    def audit_degraded(self) -> bool:
        return self._audit_degraded

    def get_tree(self, period_index: int) -> Optional[CommitmentTree]:
        return self._trees.get(period_index)

    # ------------------------------------------------------------------
    # Typed dispatch
    # ------------------------------------------------------------------

    def handle(self, request: Request) -> ServiceResult:
        """Dispatch a typed request to its operation."""
        handlers: dict[type, Callable[[Any], ServiceResult]] = {
            DepositRequest: lambda r: self.deposit(r.depositor, r.amount),
            GetPeriodRequest: lambda r: self.get_period(r.index),
            GetDepositorsRequest: lambda r: self.get_depositors(r.index),
            TotalPeriodsRequest: lambda r: self.get_total_periods(),
            BuildCommitmentRequest: lambda r: self.build_commitment(
                r.period_index, entitlements=r.entitlements, payout_pool=r.payout_pool,
            ),
            RegisterCommitmentRequest: lambda r: self.register_commitment(
                r.period_index,
                caller=r.caller,
                root=r.root,
                payout_pool=r.payout_pool,
                total_entitled=r.total_entitled,
            ),
            ClaimRequest: lambda r: self.claim(
                r.period_index, r.depositor, r.entitlement, r.proof,
            ),
        }
        handler = handlers.get(type(request))
        if handler is None:
            return ServiceResult(
                success=False,
                errors=[f"Unsupported request type: {type(request).__name__}"],
            )
        return handler(request)

    # ------------------------------------------------------------------
    # Pond
    # ------------------------------------------------------------------

    def deposit(
        self,
        depositor: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record a deposit; closes and rolls the period at the threshold."""
        if now is None:
            now = datetime.now(timezone.utc)
        try:
            check_uint256(amount, allow_zero=False)
            depositor = normalize_address(depositor)
        except MinnowError as e:
            return _failure(e)

        with self._lock:
            current = self._ledger.current_period()
            closes = current.total_deposited + amount >= self._ledger.close_threshold

            err = self._audit(
                EventKind.DEPOSIT_RECORDED,
                depositor,
                {
                    "depositor": depositor,
                    "amount": str(amount),
                    "period": current.index,
                    "closes_period": closes,
                },
                now,
            )
            if err:
                return _failure(AuditFailed(err))

            recorded = self._ledger.deposit(depositor, amount, now=now)
            landed = self._ledger.get_period(recorded.period)
            data: dict[str, Any] = {
                "depositor": recorded.depositor,
                "amount": recorded.amount,
                "period": recorded.period,
                "period_closed": not landed.is_open,
                "open_period": self._ledger.get_total_periods() - 1,
            }
            warnings: list[str] = []
            if not landed.is_open:
                closed = landed
                warn = self._audit_post(
                    EventKind.PERIOD_CLOSED,
                    SYSTEM_ACTOR,
                    {
                        "period": closed.index,
                        "total_deposited": str(closed.total_deposited),
                        "depositor_count": closed.depositor_count,
                    },
                    now,
                )
                if warn:
                    warnings.append(warn)
            if warnings:
                data["warnings"] = warnings
            return ServiceResult(success=True, data=data)

    def get_period(self, index: int) -> ServiceResult:
        try:
            period = self._ledger.get_period(index)
        except MinnowError as e:
            return _failure(e)
        return ServiceResult(success=True, data=_period_data(period))

    def get_depositors(self, index: int) -> ServiceResult:
        try:
            deposits = self._ledger.get_depositors(index)
        except MinnowError as e:
            return _failure(e)
        return ServiceResult(
            success=True,
            data={
                "period": index,
                "depositors": [
                    {"depositor": d.depositor, "amount": d.amount} for d in deposits
                ],
            },
        )

    def get_total_periods(self) -> ServiceResult:
        return ServiceResult(
            success=True,
            data={"total_periods": self._ledger.get_total_periods()},
        )

    # ------------------------------------------------------------------
    # Commitments
    # ------------------------------------------------------------------

    def build_commitment(
        self,
        period_index: int,
        entitlements: Optional[Mapping[str, int]] = None,
        payout_pool: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Build the Merkle tree for a closed period and keep it for registration.

        The result data is the claims document (root plus per-depositor
        entitlement and proof).
        """
        if entitlements is not None and payout_pool is not None:
            return ServiceResult(
                success=False,
                errors=["Provide either entitlements or payout_pool, not both"],
            )
        with self._lock:
            try:
                if self._verifier.has_commitment(period_index):
                    raise AlreadyCommitted(
                        f"Period {period_index} already has a registered commitment"
                    )
                period = self._ledger.get_period(period_index)
                if payout_pool is not None:
                    entitlements = pro_rata_entitlements(period, payout_pool)
                tree = self._builder.build(period, entitlements)
            except MinnowError as e:
                return _failure(e)

            err = self._audit(
                EventKind.COMMITMENT_BUILT,
                SYSTEM_ACTOR,
                {
                    "period": period_index,
                    "root": tree.hex_root,
                    "leaf_count": tree.leaf_count,
                    "entitlements": {
                        leaf.depositor: str(leaf.entitlement) for leaf in tree.leaves
                    },
                },
                now,
            )
            if err:
                return _failure(AuditFailed(err))
            self._trees[period_index] = tree
            return ServiceResult(success=True, data=tree.to_distribution())

    def register_commitment(
        self,
        period_index: int,
        caller: Optional[str] = None,
        root: Optional[str] = None,
        payout_pool: Optional[int] = None,
        total_entitled: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Publish a period's root to the claim verifier.

        Without an explicit root the previously built tree is used. With
        payout_pool alone, total_entitled defaults to the tree's total.
        The registration is logged before it takes effect; if the log
        write fails the root is not registered.
        """

        def record_registration(commitment: Commitment) -> None:
            payload: dict[str, Any] = {
                "period": commitment.period_index,
                "root": commitment.hex_root,
                "leaf_count": commitment.leaf_count,
            }
            if commitment.payout_pool is not None:
                payload["payout_pool"] = str(commitment.payout_pool)
                payload["total_entitled"] = str(commitment.total_entitled)
            err = self._audit(
                EventKind.COMMITMENT_REGISTERED,
                caller or SYSTEM_ACTOR,
                payload,
                commitment.registered_at,
            )
            if err:
                raise AuditFailed(err)

        with self._lock:
            try:
                period = self._ledger.get_period(period_index)
                if period.status != PeriodStatus.CLOSED:
                    raise PeriodNotClosed(f"Period {period_index} is still open")
                tree = self._trees.get(period_index)
                if root is None and tree is None:
                    raise NotFound(f"No commitment tree built for period {period_index}")
                if payout_pool is not None and total_entitled is None:
                    if tree is None:
                        raise ValueError("total_entitled is required without a built tree")
                    total_entitled = tree.total_entitled
                root_bytes = tree.root if root is None else to_hash_bytes(root)
                # An explicit root may not come from the built tree
                from_tree = tree is not None and root_bytes == tree.root
                commitment = self._verifier.register_commitment(
                    period_index,
                    root_bytes,
                    leaf_count=tree.leaf_count if from_tree else 0,
                    payout_pool=payout_pool,
                    total_entitled=total_entitled,
                    caller=caller,
                    now=now,
                    on_register=record_registration,
                )
            except ValueError as e:
                return _failure(e)

            return ServiceResult(
                success=True,
                data={
                    "period": period_index,
                    "root": commitment.hex_root,
                    "leaf_count": commitment.leaf_count,
                },
            )

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim(
        self,
        period_index: int,
        depositor: str,
        entitlement: int,
        proof: Sequence[str],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Verify a proof and pay the depositor once.

        The settlement is logged before the transfer. A claim that cannot
        be logged is refused; a logged claim whose transfer then fails is
        followed by a CLAIM_REVERTED record.
        """
        revert_warnings: list[str] = []

        def record_settlement(record: ClaimRecord) -> None:
            err = self._audit(
                EventKind.CLAIM_SETTLED,
                record.depositor,
                {
                    "period": record.period_index,
                    "depositor": record.depositor,
                    "amount_paid": str(record.amount_paid),
                },
                record.claimed_at,
            )
            if err:
                raise AuditFailed(err)

        def record_revert(record: ClaimRecord, failure: TransferFailed) -> None:
            warn = self._audit_post(
                EventKind.CLAIM_REVERTED,
                record.depositor,
                {
                    "period": record.period_index,
                    "depositor": record.depositor,
                    "reason": type(failure).__name__,
                },
                now,
            )
            if warn:
                revert_warnings.append(warn)

        try:
            record = self._verifier.claim(
                period_index, depositor, proof, entitlement,
                now=now, on_settle=record_settlement, on_revert=record_revert,
            )
        except MinnowError as e:
            warn = self._audit_post(
                EventKind.CLAIM_REJECTED,
                str(depositor),
                {
                    "period": period_index,
                    "depositor": str(depositor),
                    "reason": type(e).__name__,
                },
                now,
            )
            result = _failure(e)
            result.errors.extend(revert_warnings)
            if warn:
                result.errors.append(warn)
            return result

        return ServiceResult(
            success=True,
            data={
                "period": record.period_index,
                "depositor": record.depositor,
                "amount_paid": record.amount_paid,
            },
        )

    def status(self) -> dict[str, Any]:
        current = self._ledger.current_period()
        return {
            "token_address": self._config.token_address,
            "close_threshold": str(self._ledger.close_threshold),
            "total_periods": self._ledger.get_total_periods(),
            "open_period": current.index,
            "open_period_deposited": str(current.total_deposited),
            "built_trees": sorted(self._trees),
            "events": self._event_log.count if self._event_log is not None else 0,
            "audit_degraded": self._audit_degraded,
        }

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _audit(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime],
    ) -> Optional[str]:
        """Append an audit event. Returns an error string or None."""
        if self._event_log is None:
            return None
        with self._audit_lock:
            try:
                event = EventRecord.create(
                    event_id=self._next_event_id(),
                    event_kind=kind,
                    actor_id=actor_id,
                    payload=payload,
                    timestamp_utc=now,
                )
                self._event_log.append(event)
            except (TypeError, ValueError, OSError) as e:
                # Nothing was written; the id is reused
                self._event_counter -= 1
                return f"Event log failure: {e}"
        return None

    def _audit_post(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime],
    ) -> Optional[str]:
        """Audit a change that is already applied.

        MUST NOT roll back: the change stands, the service is flagged
        as degraded and a warning is returned.
        """
        err = self._audit(kind, actor_id, payload, now)
        if err is None:
            return None
        self._audit_degraded = True
        return f"Audit degraded: {err}; state applied but not logged"

    def _replay(self, event_log: EventLog) -> None:
        """Rebuild ledger, trees, commitments and claim marks from the log.

        Vault balances live outside the service and are not replayed.
        """
        for event in event_log.events():
            p = event.payload
            ts = event.timestamp
            if event.event_kind == EventKind.DEPOSIT_RECORDED:
                self._ledger.deposit(p["depositor"], int(p["amount"]), now=ts)
            elif event.event_kind == EventKind.COMMITMENT_BUILT:
                period = self._ledger.get_period(p["period"])
                entitlements = {a: int(v) for a, v in p["entitlements"].items()}
                self._trees[period.index] = self._builder.build(period, entitlements)
            elif event.event_kind == EventKind.COMMITMENT_REGISTERED:
                pool = p.get("payout_pool")
                total = p.get("total_entitled")
                self._verifier.register_commitment(
                    p["period"],
                    p["root"],
                    leaf_count=p["leaf_count"],
                    payout_pool=int(pool) if pool is not None else None,
                    total_entitled=int(total) if total is not None else None,
                    caller=self._verifier.operator,
                    now=ts,
                )
            elif event.event_kind == EventKind.CLAIM_SETTLED:
                self._verifier.restore_claim(
                    ClaimRecord(
                        period_index=p["period"],
                        depositor=p["depositor"],
                        claimed=True,
                        amount_paid=int(p["amount_paid"]),
                        claimed_at=ts,
                    )
                )
            elif event.event_kind == EventKind.CLAIM_REVERTED:
                self._verifier.revoke_claim(p["period"], p["depositor"])


def _failure(exc: Exception) -> ServiceResult:
    return ServiceResult(
        success=False,
        errors=[str(exc)],
        data={"error": type(exc).__name__},
    )


def _period_data(period: Period) -> dict[str, Any]:
    return {
        "index": period.index,
        "status": period.status.value,
        "total_deposited": period.total_deposited,
        "opened_at": period.opened_at.isoformat(),
        "closed_at": period.closed_at.isoformat() if period.closed_at else None,
        "depositors": [
            {"depositor": d.depositor, "amount": d.amount} for d in period.depositors
        ],
    }
