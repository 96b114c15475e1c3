import logging
import math
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.errors import (
    DailyLimitExceeded,
    DuplicateSubmission,
    InvalidState,
    NotFound,
    ValidationError,
    translate_store_errors,
)
from domain.models import Bet, BetStatus, Direction, Duration, Token, UserAccount
from domain.validation import (
    coerce_choice,
    normalize_address,
    parse_amount,
    validate_hash,
)
from infra.db import as_utc, utcnow
from infra.monitoring import prometheus_metrics
from infra.settings import settings


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
ACCOUNT_WRITE_ATTEMPTS = 2


def parse_bet_id(bet_id: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(bet_id, uuid.UUID):
        return bet_id
    try:
        return uuid.UUID(str(bet_id))
    except ValueError:
        raise ValidationError.for_field("betId", "must be a bet id")


def validate_pagination(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError.for_field("page", "must be at least 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError.for_field("limit", f"must be between 1 and {MAX_PAGE_SIZE}")


class BetLifecycleService:
    """
    Owns the bet state machine and the account rollups derived from it.

    Bet transitions are single conditional updates guarded by the current
    status, so concurrent settlements of one bet serialize in the store and
    exactly one wins. The account counters are written in a second step; if
    that step fails the bet stays settled and the failure is logged for
    reconciliation. UserAccount rows are only ever written from here.
    """

    def __init__(self, db: AsyncSession, cache=None, daily_limit: Optional[int] = None):
        self.db = db
        self.cache = cache
        self.daily_limit = settings.daily_bet_limit if daily_limit is None else daily_limit

    # Placement

    @translate_store_errors("place bet", conflicts_are_duplicates=True)
    async def place_bet(
        self,
        user_address: str,
        token: Union[Token, str],
        amount: Union[Decimal, str],
        direction: Union[Direction, str],
        duration: Union[Duration, int],
        tx_hash: str,
        start_price: Union[Decimal, str],
        commit_hash: str,
        start_time: Optional[datetime] = None,
        referrer: Optional[str] = None,
    ) -> Bet:
        """Record a bet mirrored from chain and roll it into the bettor's account"""
        address = normalize_address(user_address)
        token = coerce_choice(Token, token, "token")
        direction = coerce_choice(Direction, direction, "direction")
        duration = coerce_choice(Duration, duration, "duration")
        amount = parse_amount(amount, "amount", allow_zero=False)
        start_price = parse_amount(start_price, "startPrice")
        tx_hash = validate_hash(tx_hash, "txHash")
        commit_hash = validate_hash(commit_hash, "commitHash")
        placed_at = as_utc(start_time) if start_time else utcnow()

        if await self._tx_hash_exists(tx_hash):
            raise DuplicateSubmission("Bet with this transaction hash already exists")

        account = await self._get_account(address)
        if account is not None and not account.can_place_bet(self.daily_limit, placed_at.date()):
            raise DailyLimitExceeded(f"Daily limit of {self.daily_limit} bets reached")

        bet = Bet(
            user_address=address,
            token=token,
            amount=amount,
            direction=direction,
            duration=int(duration),
            start_price=start_price,
            start_time=placed_at,
            status=BetStatus.ACTIVE,
            is_winner=False,
            payout=Decimal("0"),
            tx_hash=tx_hash,
            commit_hash=commit_hash,
            revealed=False,
        )
        self.db.add(bet)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race against a concurrent placement of the same hash
            await self.db.rollback()
            raise DuplicateSubmission("Bet with this transaction hash already exists")
        self.db.expunge(bet)

        await self._update_account_or_flag(
            address,
            bet.id,
            lambda acct: acct.record_placement(amount, placed_at),
            create=True,
            referrer=referrer,
        )

        prometheus_metrics.bets_placed_total.labels(token=token.value, direction=direction.value).inc()
        logger.info(f"Bet placed: {bet.id} by {address}")
        await self._invalidate(address)
        return bet

    # Settlement

    @translate_store_errors("settle bet")
    async def settle_bet(
        self,
        bet_id: Union[str, uuid.UUID],
        end_price: Union[Decimal, str],
        is_winner: bool,
        payout: Union[Decimal, str],
        settle_tx_hash: str,
    ) -> Bet:
        """Resolve an active bet exactly once and credit the bettor's counters"""
        bet_uuid = parse_bet_id(bet_id)
        end_price = parse_amount(end_price, "endPrice")
        payout = parse_amount(payout, "payout")
        settle_tx_hash = validate_hash(settle_tx_hash, "txHash")
        if not isinstance(is_winner, bool):
            raise ValidationError.for_field("isWinner", "must be a boolean")

        bet = await self.get_bet(bet_uuid)
        if bet.status != BetStatus.ACTIVE:
            raise InvalidState(f"Bet is not active (status: {bet.status.value})")

        settled_at = utcnow()
        transitioned = await self._transition(
            bet_uuid,
            BetStatus.ACTIVE,
            status=BetStatus.SETTLED,
            end_price=end_price,
            is_winner=is_winner,
            payout=payout,
            settle_tx_hash=settle_tx_hash,
            settled_at=settled_at,
        )
        if not transitioned:
            raise InvalidState("Bet is not active (settled concurrently)")
        await self.db.refresh(bet)
        self.db.expunge(bet)

        await self._update_account_or_flag(
            bet.user_address,
            bet.id,
            lambda acct: acct.record_settlement(is_winner, payout),
        )

        outcome = "win" if is_winner else "loss"
        prometheus_metrics.bets_settled_total.labels(token=bet.token.value, outcome=outcome).inc()
        logger.info(f"Bet settled: {bet.id} - Winner: {is_winner}")
        await self._invalidate(bet.user_address)
        return bet

    @translate_store_errors("cancel bet")
    async def cancel_bet(self, bet_id: Union[str, uuid.UUID]) -> Bet:
        """Move an active bet to cancelled; counters are left as placed"""
        bet_uuid = parse_bet_id(bet_id)
        bet = await self.get_bet(bet_uuid)
        if bet.status != BetStatus.ACTIVE:
            raise InvalidState(f"Bet is not active (status: {bet.status.value})")

        if not await self._transition(bet_uuid, BetStatus.ACTIVE, status=BetStatus.CANCELLED):
            raise InvalidState("Bet is not active (changed concurrently)")
        await self.db.refresh(bet)

        prometheus_metrics.bets_cancelled_total.labels(token=bet.token.value).inc()
        logger.info(f"Bet cancelled: {bet.id}")
        await self._invalidate(bet.user_address)
        return bet

    @translate_store_errors("record reveal")
    async def record_reveal(self, bet_id: Union[str, uuid.UUID], reveal_tx_hash: str) -> Bet:
        """Mark the commit of an active bet as revealed on chain"""
        bet_uuid = parse_bet_id(bet_id)
        reveal_tx_hash = validate_hash(reveal_tx_hash, "revealTxHash")
        bet = await self.get_bet(bet_uuid)
        if bet.status != BetStatus.ACTIVE or bet.revealed:
            raise InvalidState("Bet is not awaiting a reveal")

        result = await self.db.execute(
            update(Bet)
            .where(Bet.id == bet_uuid, Bet.status == BetStatus.ACTIVE, Bet.revealed.is_(False))
            .values(revealed=True, reveal_tx_hash=reveal_tx_hash)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidState("Bet is not awaiting a reveal")
        await self.db.commit()
        await self.db.refresh(bet)

        logger.info(f"Reveal recorded for bet {bet.id}")
        await self._invalidate(bet.user_address)
        return bet

    # Account

    @translate_store_errors("update preferences")
    async def update_preferences(
        self,
        address: str,
        preferences: Optional[Dict[str, Any]] = None,
        referrer: Optional[str] = None,
    ) -> UserAccount:
        """Merge preferences into an existing account; referrer is set once"""
        address = normalize_address(address, "address")
        account = await self._get_account(address, for_update=True)
        if account is None:
            raise NotFound("User has not placed any bets yet")

        if preferences:
            account.preferences = {**(account.preferences or {}), **preferences}
        if referrer and not account.referrer:
            account.referrer = referrer
        await self.db.commit()
        await self._invalidate(address)
        return account

    @translate_store_errors("get account")
    async def get_account(self, address: str) -> Optional[UserAccount]:
        return await self._get_account(normalize_address(address, "address"))

    # Queries

    @translate_store_errors("get bet")
    async def get_bet(self, bet_id: Union[str, uuid.UUID]) -> Bet:
        result = await self.db.execute(
            select(Bet).where(Bet.id == parse_bet_id(bet_id)).execution_options(populate_existing=True)
        )
        bet = result.scalar_one_or_none()
        if bet is None:
            raise NotFound("Bet not found")
        return bet

    @translate_store_errors("list user bets")
    async def list_user_bets(
        self,
        address: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[BetStatus] = None,
    ) -> Dict[str, Any]:
        """Bettor's bets, newest first, with pagination metadata"""
        address = normalize_address(address, "address")
        validate_pagination(page, limit)

        conditions = [Bet.user_address == address]
        if status is not None:
            conditions.append(Bet.status == coerce_choice(BetStatus, status, "status"))

        bets = (await self.db.execute(
            select(Bet)
            .where(*conditions)
            .order_by(Bet.start_time.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )).scalars().all()
        total = (await self.db.execute(
            select(func.count()).select_from(Bet).where(*conditions)
        )).scalar() or 0

        return {
            "bets": [bet.to_dict() for bet in bets],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }

    @translate_store_errors("list active bets")
    async def list_active_bets(self, token: Optional[Token] = None, limit: Optional[int] = None) -> List[Bet]:
        """Active bets, oldest first, for settlement pollers"""
        query = select(Bet).where(Bet.status == BetStatus.ACTIVE)
        if token is not None:
            query = query.where(Bet.token == coerce_choice(Token, token, "token"))
        query = query.order_by(Bet.start_time.asc())
        if limit is not None:
            query = query.limit(limit)
        return list((await self.db.execute(query)).scalars().all())

    @translate_store_errors("list expired bets")
    async def list_expired_active_bets(self, now: Optional[datetime] = None) -> List[Bet]:
        """Active bets whose window has passed but have not been settled yet"""
        now = now or utcnow()
        past_window = or_(*[
            and_(Bet.duration == int(duration), Bet.start_time < now - timedelta(seconds=int(duration)))
            for duration in Duration
        ])
        return list((await self.db.execute(
            select(Bet)
            .where(Bet.status == BetStatus.ACTIVE, past_window)
            .order_by(Bet.start_time.asc())
        )).scalars().all())

    # Reconciliation

    @translate_store_errors("reconcile account")
    async def reconcile_account(self, address: str) -> Dict[str, Any]:
        """
        Rebuild an account's counters from its bets.

        Bets are the source of truth; counters drift only when the second
        step of a placement or settlement failed.
        """
        address = normalize_address(address, "address")
        bets = (await self.db.execute(
            select(Bet).where(Bet.user_address == address)
        )).scalars().all()

        actual = {
            "total_bets": len(bets),
            "total_wagered": sum((bet.amount for bet in bets), Decimal("0")),
            "total_settled": sum(1 for bet in bets if bet.status == BetStatus.SETTLED),
            "total_wins": sum(1 for bet in bets if bet.status == BetStatus.SETTLED and bet.is_winner),
            "total_won": sum(
                (bet.payout for bet in bets if bet.status == BetStatus.SETTLED and bet.is_winner),
                Decimal("0"),
            ),
        }

        account = await self._get_account(address, for_update=True)
        if account is None:
            if not bets:
                raise NotFound("No bets or account for this address")
            account = UserAccount(address=address, total_bets=0, total_wins=0, total_settled=0,
                                  total_wagered=Decimal("0"), total_won=Decimal("0"),
                                  bets_today=0)
            self.db.add(account)

        drift = {}
        for field, value in actual.items():
            stored = getattr(account, field)
            if stored is None or Decimal(stored) != Decimal(value):
                drift[field] = {"stored": str(stored), "actual": str(value)}
                setattr(account, field, value)

        if bets:
            first = min(bet.start_time for bet in bets)
            last = max(bet.start_time for bet in bets)
            if account.first_bet_time is None or account.first_bet_time > first:
                account.first_bet_time = first
            if account.last_bet_time is None or account.last_bet_time < last:
                account.last_bet_time = last

        await self.db.commit()

        if drift:
            prometheus_metrics.reconciliation_drift_total.inc()
            logger.info(f"Reconciled account {address}: {drift}")
            await self._invalidate(address)

        return {"address": address, "corrected": bool(drift), "drift": drift}

    async def reconcile_all(self) -> List[Dict[str, Any]]:
        """Reconcile every address that has bets or an account"""
        addresses = await self._known_addresses()
        return [await self.reconcile_account(address) for address in addresses]

    @translate_store_errors("list addresses")
    async def _known_addresses(self) -> List[str]:
        from_bets = (await self.db.execute(select(Bet.user_address).distinct())).scalars().all()
        from_accounts = (await self.db.execute(select(UserAccount.address))).scalars().all()
        return sorted(set(from_bets) | set(from_accounts))

    # Internals

    async def _tx_hash_exists(self, tx_hash: str) -> bool:
        result = await self.db.execute(select(Bet.id).where(Bet.tx_hash == tx_hash))
        return result.scalar_one_or_none() is not None

    async def _get_account(self, address: str, for_update: bool = False) -> Optional[UserAccount]:
        query = select(UserAccount).where(UserAccount.address == address)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _transition(self, bet_id: uuid.UUID, expected: BetStatus, **values) -> bool:
        """Single conditional update: applies only if the bet is still ``expected``"""
        try:
            result = await self.db.execute(
                update(Bet)
                .where(Bet.id == bet_id, Bet.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        if result.rowcount != 1:
            await self.db.rollback()
            return False
        await self.db.commit()
        return True

    async def _update_account_or_flag(
        self,
        address: str,
        bet_id: uuid.UUID,
        mutate,
        create: bool = False,
        referrer: Optional[str] = None,
    ) -> bool:
        """
        Second step of a placement or settlement.

        The bet write is already committed. A failure here is logged for
        reconciliation instead of failing the caller.
        """
        for attempt in range(ACCOUNT_WRITE_ATTEMPTS):
            try:
                account = await self._get_account(address, for_update=True)
                if account is None:
                    if not create:
                        logger.error(
                            f"No account for {address} while applying bet {bet_id}; "
                            f"reconciliation required"
                        )
                        return False
                    account = UserAccount(
                        address=address, total_bets=0, total_wins=0, total_settled=0,
                        total_wagered=Decimal("0"), total_won=Decimal("0"), bets_today=0,
                        referrer=referrer,
                    )
                    self.db.add(account)
                mutate(account)
                await self.db.commit()
                return True
            except IntegrityError:
                # Concurrent first placement created the account; retry as an update
                await self.db.rollback()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(
                    f"Account update failed for {address} after bet {bet_id} was written; "
                    f"reconciliation required: {e}"
                )
                return False

        logger.error(f"Account update for {address} kept conflicting on bet {bet_id}; reconciliation required")
        return False

    async def _invalidate(self, address: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_bettor(address)
