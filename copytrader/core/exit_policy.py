"""
Exit Policy Engine
Hybrid exit state machine: forced exit, then the hold-time phase table driven by the
source wallet's own sells, merged with the threshold strategy (TP / trailing / SL)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol

from copytrader.core.logger import get_logger
from copytrader.core.metrics import MetricsCollector
from copytrader.core.position_store import utc_now
from copytrader.core.store import KeyValueStore


logger = get_logger(__name__)


class ExitPhase(Enum):
    """Phase derived from hold time"""
    MIRROR = "phase1_mirror"
    LOSS_PROTECT = "phase2_loss_protect"
    INDEPENDENT = "phase3_independent"


REASON_FORCE_EXIT = "force_exit"
REASON_WALLET_EXIT_EARLY = "wallet_exit_early"
REASON_WALLET_EXIT_LOSS = "wallet_exit_loss_protection"
REASON_HOLD = "phase2_holding"
REASON_INDEPENDENT = "phase3_independent"
REASON_NO_SIGNAL = "no_wallet_exit"

PRIORITY_FORCE_EXIT = 1
PRIORITY_WALLET_EXIT = 2


@dataclass
class ExitDecision:
    """Fresh each evaluation; never persisted"""
    should_exit: bool
    reason: str
    description: str = ""
    priority: int = 99
    phase: Optional[ExitPhase] = None
    also_triggered: List[str] = field(default_factory=list)

    @classmethod
    def hold(cls, reason: str, description: str = "", phase: Optional[ExitPhase] = None) -> "ExitDecision":
        return cls(False, reason, description, 99, phase)


class ThresholdPolicy(Protocol):
    """Sibling strategy returning its own exit decision"""

    def evaluate_exit(self, position, current_price: float, pnl_percent: float, now: datetime) -> ExitDecision:
        ...


class WalletSellOracle(Protocol):
    async def get_sell_time(self, wallet: str, token_id: str) -> Optional[datetime]:
        ...


def force_exit_key(token_id: str) -> str:
    return f"force_exit:{token_id}"


def phase_for(hold_time_s: float, wallet_exit_window_s: float, loss_protection_window_s: float) -> ExitPhase:
    if hold_time_s < wallet_exit_window_s:
        return ExitPhase.MIRROR
    if hold_time_s < loss_protection_window_s:
        return ExitPhase.LOSS_PROTECT
    return ExitPhase.INDEPENDENT


def evaluate_phase(
    hold_time_s: float,
    entry_time: datetime,
    wallet_sell_time: Optional[datetime],
    pnl_percent: float,
    wallet_exit_window_s: float = 180,
    loss_protection_window_s: float = 600
) -> ExitDecision:
    """
    The phase table, as a pure function

    | phase          | hold time  | rule                                        |
    | mirror         | < 3 min    | wallet sold after entry -> exit             |
    | loss-protect   | 3 - 10 min | wallet sold after entry and PnL < 0 -> exit |
    | independent    | >= 10 min  | wallet sells ignored                        |

    A sell at or before our entry never counts.
    """
    phase = phase_for(hold_time_s, wallet_exit_window_s, loss_protection_window_s)

    if phase is ExitPhase.INDEPENDENT:
        return ExitDecision.hold(REASON_INDEPENDENT, "Independent mode, wallet sells ignored", phase)

    if wallet_sell_time is None:
        return ExitDecision.hold(REASON_NO_SIGNAL, "Source wallet has not sold", phase)

    if wallet_sell_time <= entry_time:
        return ExitDecision.hold(REASON_NO_SIGNAL, "Wallet sell predates our entry", phase)

    if phase is ExitPhase.MIRROR:
        return ExitDecision(
            True,
            REASON_WALLET_EXIT_EARLY,
            f"Source wallet sold {int(hold_time_s)}s after our entry",
            PRIORITY_WALLET_EXIT,
            phase
        )

    if pnl_percent < 0:
        return ExitDecision(
            True,
            REASON_WALLET_EXIT_LOSS,
            f"Source wallet sold and we are at {pnl_percent:.2f}%",
            PRIORITY_WALLET_EXIT,
            phase
        )

    return ExitDecision.hold(
        REASON_HOLD,
        f"Source wallet sold but we are at +{pnl_percent:.2f}%, holding",
        phase
    )


class ExitPolicyEngine:
    """
    Decides whether an open position exits this cycle

    Order per position: force-exit flag, phase table, threshold policy.
    When both the phase table and the threshold policy fire, the phase table's
    reason is recorded and the threshold reason goes to also_triggered.

    Usage:
        engine = ExitPolicyEngine(store, wallet_activity, copy_strategy, metrics)
        decision = await engine.evaluate(position, price, pnl_percent)
        if decision.should_exit:
            ...
    """

    def __init__(
        self,
        store: KeyValueStore,
        wallet_activity: WalletSellOracle,
        threshold_policy: ThresholdPolicy,
        metrics: MetricsCollector,
        wallet_exit_window_s: float = 180,
        loss_protection_window_s: float = 600,
        timeout_s: float = 10.0,
        now: Callable[[], datetime] = utc_now
    ):
        if wallet_exit_window_s >= loss_protection_window_s:
            raise ValueError("wallet_exit_window_s must be shorter than loss_protection_window_s")

        self.store = store
        self.wallet_activity = wallet_activity
        self.threshold_policy = threshold_policy
        self.metrics = metrics
        self.wallet_exit_window_s = wallet_exit_window_s
        self.loss_protection_window_s = loss_protection_window_s
        self.timeout_s = timeout_s
        self._now = now

    async def check_force_exit(self, token_id: str) -> bool:
        """Consume the force-exit flag (read and delete)"""
        try:
            return await self.store.getdel(force_exit_key(token_id)) is not None
        except Exception as e:
            logger.error("force_exit_check_failed", token_id=token_id, error=str(e))
            return False

    async def _wallet_sell_time(self, wallet: Optional[str], token_id: str) -> Optional[datetime]:
        if not wallet:
            return None
        try:
            return await asyncio.wait_for(
                self.wallet_activity.get_sell_time(wallet, token_id),
                timeout=self.timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning("wallet_sell_check_timeout", wallet=wallet, token_id=token_id)
        except Exception as e:
            logger.warning("wallet_sell_check_failed", wallet=wallet, token_id=token_id, error=str(e))
        # inconclusive never triggers an exit
        return None

    async def evaluate(
        self,
        position,
        current_price: Optional[float],
        pnl_percent: Optional[float]
    ) -> ExitDecision:
        """
        Evaluate one position

        Args:
            position: Open Position
            current_price: Current SOL per token, None if no price this cycle
            pnl_percent: Fee-aware unrealized PnL percent, None if no price this cycle

        Without a price only the force-exit flag and the mirror phase can fire;
        rules that need PnL stay inconclusive.
        """
        token_id = position.token_id

        if await self.check_force_exit(token_id):
            decision = ExitDecision(
                True,
                REASON_FORCE_EXIT,
                "Force exit requested (token migrated)",
                PRIORITY_FORCE_EXIT
            )
            self._record(token_id, decision)
            return decision

        now = self._now()
        hold_time_s = position.hold_time_s(now)
        phase = phase_for(hold_time_s, self.wallet_exit_window_s, self.loss_protection_window_s)

        sell_time = None
        if phase is not ExitPhase.INDEPENDENT:
            sell_time = await self._wallet_sell_time(position.source_wallet, token_id)

        if phase is ExitPhase.LOSS_PROTECT and pnl_percent is None:
            phase_decision = ExitDecision.hold(REASON_NO_SIGNAL, "No price, loss check inconclusive", phase)
        else:
            phase_decision = evaluate_phase(
                hold_time_s,
                position.entry_time,
                sell_time,
                pnl_percent if pnl_percent is not None else 0.0,
                self.wallet_exit_window_s,
                self.loss_protection_window_s
            )

        if current_price is None or pnl_percent is None:
            threshold_decision = ExitDecision.hold("no_price", "No price this cycle")
        else:
            threshold_decision = self.threshold_policy.evaluate_exit(position, current_price, pnl_percent, now)

        decision = self._merge(phase_decision, threshold_decision)
        if decision.should_exit:
            self._record(token_id, decision)
        return decision

    @staticmethod
    def _merge(phase_decision: ExitDecision, threshold_decision: ExitDecision) -> ExitDecision:
        if phase_decision.should_exit:
            if threshold_decision.should_exit:
                phase_decision.also_triggered.append(threshold_decision.reason)
            return phase_decision
        if threshold_decision.should_exit:
            threshold_decision.phase = phase_decision.phase
            return threshold_decision
        return phase_decision

    def _record(self, token_id: str, decision: ExitDecision) -> None:
        logger.info(
            "exit_decision",
            token_id=token_id,
            reason=decision.reason,
            phase=decision.phase.value if decision.phase else None,
            priority=decision.priority,
            also_triggered=decision.also_triggered or None,
            description=decision.description
        )
        self.metrics.increment_counter("exit_decisions", labels={"reason": decision.reason})
