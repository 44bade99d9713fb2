"""
Giveaway Service - Time-boxed chat giveaways

How it works:
- A sender opens a giveaway in a chat with an amount
- For the giveaway window (60s by default) anyone in the chat enters by
  sending a trigger phrase ("gmonad", "gm", ...)
- When the window closes one participant is drawn uniformly at random and
  tipped through the settlement orchestrator
- Random drops pick N winners from a pool supplied by the caller

Lifecycle: OPEN -> CLOSING -> CLOSED. The deadline timer is the only closer,
and closure starts with an atomic pop from the registry, so a giveaway is
paid out at most once.
"""

import asyncio
import inspect
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .config import TipConfig
from .errors import GiveawayError, SettlementError
from .settlement import SettlementOrchestrator, SettlementReceipt, parse_amount
from .wallets import Wallet, normalize_username


class GiveawayState(Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


GiveawayKey = Tuple[str, float]


@dataclass
class Giveaway:
    """One giveaway, alive only until its deadline"""
    chat_id: str
    sender_wallet: Wallet
    amount: Decimal
    fee_amount: Decimal
    started_at: float
    deadline: float
    state: GiveawayState = GiveawayState.OPEN
    participants: List[str] = field(default_factory=list)
    _seen: set = field(default_factory=set, repr=False)

    @property
    def key(self) -> GiveawayKey:
        return (self.chat_id, self.started_at)

    def add_participant(self, identity: str) -> bool:
        """First entry wins; repeats are no-ops"""
        if self.state is not GiveawayState.OPEN or identity in self._seen:
            return False
        self._seen.add(identity)
        self.participants.append(identity)
        return True


@dataclass
class GiveawayOutcome:
    """What the chat should be told when a giveaway closes"""
    chat_id: str
    status: str  # 'no_participants', 'won', 'failed'
    amount: Decimal
    participants: int
    winner: Optional[str] = None
    receipt: Optional[SettlementReceipt] = None
    error: Optional[Exception] = None
    closed_at: datetime = None

    def __post_init__(self):
        if self.closed_at is None:
            self.closed_at = datetime.now(timezone.utc)


@dataclass
class DropResult:
    """One winner of a random drop"""
    winner: str
    receipt: Optional[SettlementReceipt] = None
    error: Optional[SettlementError] = None

    @property
    def success(self) -> bool:
        return self.receipt is not None


def pick_winner(participants: Sequence[str], rng: random.Random) -> str:
    """Uniform draw over the ordered list of distinct participants"""
    if not participants:
        raise GiveawayError("Cannot draw a winner without participants")
    return participants[rng.randrange(len(participants))]


def matches_trigger(text: Optional[str], triggers: Sequence[str]) -> bool:
    if not text:
        return False
    return text.strip().lower() in triggers


class GiveawayManager:
    """
    Owns every open giveaway

    Lifecycle per giveaway:
    1. start() - registers it and arms the deadline timer
    2. handle_message() - collects trigger entries while open
    3. _close() - fired by the timer only: draw, settle, announce, discard
    """

    def __init__(
        self,
        orchestrator: SettlementOrchestrator,
        config: TipConfig,
        notifier: Optional[Callable] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize giveaway manager

        Args:
            orchestrator: Settlement orchestrator used for payouts
            config: Tip config (duration, triggers, overlap policy)
            notifier: Sync or async callable receiving GiveawayOutcome
            rng: Random source (SystemRandom by default)
        """
        self.orchestrator = orchestrator
        self.config = config
        self.notifier = notifier
        self.rng = rng or random.SystemRandom()

        self._open: Dict[GiveawayKey, Giveaway] = {}
        self._timers: Dict[GiveawayKey, asyncio.Task] = {}

        logger.info(
            f"Giveaway manager initialized ({config.giveaway_duration_seconds}s window, "
            f"triggers {config.giveaway_triggers})"
        )

    def open_giveaways(self, chat_id=None) -> List[Giveaway]:
        if chat_id is None:
            return list(self._open.values())
        chat_id = str(chat_id)
        return [g for g in self._open.values() if g.chat_id == chat_id]

    async def start(self, chat_id, sender_wallet: Wallet, amount) -> Giveaway:
        """
        Open a giveaway in a chat

        Args:
            chat_id: Chat the giveaway belongs to
            sender_wallet: Funding wallet paying the prize
            amount: Prize amount

        Returns:
            The open Giveaway
        """
        chat_id = str(chat_id)
        amount = parse_amount(amount)

        if not self.config.allow_overlapping_giveaways and self.open_giveaways(chat_id):
            raise GiveawayError(f"A giveaway is already running in chat {chat_id}")

        # Fail early rather than at the deadline
        await self.orchestrator.check_balance(sender_wallet, amount)

        loop = asyncio.get_running_loop()
        started_at = loop.time()
        while (chat_id, started_at) in self._open:
            started_at += 1e-6

        giveaway = Giveaway(
            chat_id=chat_id,
            sender_wallet=sender_wallet,
            amount=amount,
            fee_amount=self.orchestrator.fee_for(amount),
            started_at=started_at,
            deadline=started_at + self.config.giveaway_duration_seconds,
        )
        self._open[giveaway.key] = giveaway
        self._timers[giveaway.key] = asyncio.create_task(self._close_at_deadline(giveaway.key))

        logger.info(
            f"🎉 Giveaway opened in chat {chat_id}: {amount} from {sender_wallet.identity} "
            f"({self.config.giveaway_duration_seconds}s)"
        )
        return giveaway

    def handle_message(self, chat_id, identity: str, text: Optional[str]) -> bool:
        """
        Record a trigger entry

        Args:
            chat_id: Originating chat
            identity: Participant identity (username)
            text: Raw message text

        Returns:
            True if the identity was added to at least one giveaway
        """
        if not matches_trigger(text, self.config.giveaway_triggers):
            return False

        try:
            identity = normalize_username(identity)
        except ValueError:
            return False

        entered = False
        for giveaway in self.open_giveaways(chat_id):
            if giveaway.add_participant(identity):
                entered = True
                logger.debug(f"@{identity} entered giveaway in chat {giveaway.chat_id}")
        return entered

    async def _close_at_deadline(self, key: GiveawayKey):
        giveaway = self._open.get(key)
        if giveaway is None:
            return
        delay = giveaway.deadline - asyncio.get_running_loop().time()
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self._close(key)
        finally:
            self._timers.pop(key, None)

    async def _close(self, key: GiveawayKey) -> Optional[GiveawayOutcome]:
        # Atomic check-and-remove: a second closer finds nothing
        giveaway = self._open.pop(key, None)
        if giveaway is None:
            logger.debug(f"Giveaway {key} already closed")
            return None

        giveaway.state = GiveawayState.CLOSING
        participants = list(giveaway.participants)

        if not participants:
            outcome = GiveawayOutcome(
                chat_id=giveaway.chat_id,
                status='no_participants',
                amount=giveaway.amount,
                participants=0,
            )
            logger.info(f"Giveaway in chat {giveaway.chat_id} closed with no participants")
        else:
            winner = pick_winner(participants, self.rng)
            logger.info(
                f"Giveaway in chat {giveaway.chat_id}: @{winner} drawn from {len(participants)} participants"
            )
            try:
                receipt = await self.orchestrator.settle(giveaway.sender_wallet, winner, giveaway.amount)
                outcome = GiveawayOutcome(
                    chat_id=giveaway.chat_id,
                    status='won',
                    amount=giveaway.amount,
                    participants=len(participants),
                    winner=winner,
                    receipt=receipt,
                )
            except Exception as e:
                # Any failure still closes the giveaway with an announcement
                logger.error(f"❌ Giveaway payout to @{winner} failed: {type(e).__name__}: {e}")
                outcome = GiveawayOutcome(
                    chat_id=giveaway.chat_id,
                    status='failed',
                    amount=giveaway.amount,
                    participants=len(participants),
                    winner=winner,
                    error=e,
                )

        giveaway.state = GiveawayState.CLOSED
        await self._announce(outcome)
        return outcome

    async def _announce(self, outcome: GiveawayOutcome):
        if self.notifier is None:
            return
        try:
            result = self.notifier(outcome)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Giveaway announcement for chat {outcome.chat_id} failed: {e}")

    async def random_drop(
        self,
        chat_id,
        sender_wallet: Wallet,
        pool: Sequence[str],
        winners: int,
        amount
    ) -> List[DropResult]:
        """
        Tip `winners` distinct members drawn from a caller-supplied pool

        Args:
            chat_id: Originating chat (for logging)
            sender_wallet: Funding wallet paying every winner
            pool: Eligible usernames
            winners: Number of winners
            amount: Amount per winner

        Returns:
            One DropResult per winner; failures are collected, not raised
        """
        amount = parse_amount(amount)
        if winners < 1:
            raise GiveawayError("Number of winners must be at least 1")

        candidates = []
        for name in pool:
            try:
                key = normalize_username(name)
            except ValueError:
                continue
            if key not in candidates:
                candidates.append(key)

        if not candidates:
            raise GiveawayError(f"No eligible members in chat {chat_id}")

        count = min(winners, len(candidates))
        await self.orchestrator.check_balance(sender_wallet, amount * count)

        drawn = self.rng.sample(candidates, count)
        logger.info(f"Random drop in chat {chat_id}: {count} winners of {amount} each")

        results = []
        for winner in drawn:
            try:
                receipt = await self.orchestrator.settle(sender_wallet, winner, amount)
                results.append(DropResult(winner=winner, receipt=receipt))
            except SettlementError as e:
                logger.error(f"✗ Random drop payout to @{winner} failed: {e}")
                results.append(DropResult(winner=winner, error=e))
        return results

    async def shutdown(self):
        """Cancel pending timers; open giveaways are discarded without payout"""
        timers = list(self._timers.values())
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        if self._open:
            logger.warning(f"Discarding {len(self._open)} open giveaways on shutdown")
        self._open.clear()
        self._timers.clear()
