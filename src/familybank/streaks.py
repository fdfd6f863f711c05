"""Streak tracking plus the daily bonus and penalty sweep."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Callable, Optional, Tuple, Union

from sqlalchemy import func
from sqlmodel import Session, select

from .ledger import WalletLedger
from .models import AwardType, StreakStats, SweepReport, TaskStreak, TransactionReason
from .ops import StructuredLogger
from .persistence import (
    ActivityDay,
    Child,
    ChildStreak,
    Database,
    FamilySettings,
    FamilyStreak,
    Streak,
    SweepRun,
    UnitOfWork,
    WalletTransaction,
    claim_version,
    get_scoped,
    settings_for,
)

StreakRow = Union[Streak, ChildStreak, FamilyStreak]


def streak_bonus_percent(current_streak: int) -> int:
    """Bonus percentage shown for a streak length."""

    if current_streak >= 7:
        return 20
    if current_streak >= 5:
        return 15
    if current_streak >= 3:
        return 10
    return 0


def missed_days(last: date, day: date, is_excused: Callable[[date], bool]) -> int:
    """Days strictly between ``last`` and ``day`` that were not excused."""

    count = 0
    cursor = last + timedelta(days=1)
    while cursor < day:
        if not is_excused(cursor):
            count += 1
        cursor += timedelta(days=1)
    return count


def advance(row: StreakRow, day: date, *, protection_days: int, is_excused: Callable[[date], bool]) -> bool:
    """Move ``row`` forward to ``day``; returns False when nothing changed.

    The next day adds one. A gap of missed days within ``protection_days``
    keeps the count as it is, and a longer gap restarts it at one. Excused
    days are frozen: activity on them leaves the row untouched.
    """

    last = row.last_activity_day
    if last is not None and day <= last:
        return False
    if is_excused(day):
        return False
    missed = missed_days(last, day, is_excused) if last is not None else 0
    if last is None or row.current == 0:
        row.current = 1
        row.started_on = day
    elif missed == 0:
        row.current += 1
    elif missed > protection_days:
        row.is_disrupted = True
        row.current = 1
        row.started_on = day
    row.best = max(row.best, row.current)
    row.last_activity_day = day
    return True


def _tier_amounts(settings: FamilySettings, tier: int) -> Tuple[int, int]:
    if tier <= 1:
        money, stars = settings.first_miss_pence, settings.first_miss_stars
    elif tier == 2:
        money, stars = settings.second_miss_pence, settings.second_miss_stars
    else:
        money, stars = settings.third_miss_pence, settings.third_miss_stars
    penalty_type = AwardType(settings.penalty_type)
    return (money if penalty_type.includes_money else 0, stars if penalty_type.includes_stars else 0)


class StreakCalculator:
    """Keeps per-task, per-child and family streaks and runs the daily sweep."""

    def __init__(
        self,
        database: Database,
        ledger: WalletLedger,
        *,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._logger = logger or database.logger

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------
    def record_activity(self, uow: UnitOfWork, family_id: str, child_id: str, task_id: str, day: date) -> bool:
        """Mark ``child_id`` as active on ``task_id`` for ``day`` and advance their streaks.

        Runs inside the caller's unit of work. Returns False for a repeat on
        the same day.
        """

        session = uow.session
        settings = settings_for(session, family_id)
        child = get_scoped(session, Child, family_id, child_id, label="Child")
        seen = session.exec(
            select(ActivityDay).where(
                ActivityDay.family_id == family_id,
                ActivityDay.child_id == child_id,
                ActivityDay.task_id == task_id,
                ActivityDay.day == day,
            )
        ).first()
        if seen is not None:
            return False
        session.add(ActivityDay(family_id=family_id, child_id=child_id, task_id=task_id, day=day))

        protection = settings.streak_protection_days

        def child_excused(moment: date) -> bool:
            return settings.holiday_covers(moment) or child.holiday_covers(moment)

        for row, excused in (
            (self._task_streak(session, family_id, child_id, task_id), child_excused),
            (self._child_streak(session, family_id, child_id), child_excused),
            (self._family_streak(session, family_id), settings.holiday_covers),
        ):
            claim_version(session, row)
            if advance(row, day, protection_days=protection, is_excused=excused):
                session.add(row)
        session.flush()
        return True

    # ------------------------------------------------------------------
    # Daily sweep
    # ------------------------------------------------------------------
    def run_daily_sweep(self, family_id: str, today: date) -> SweepReport:
        """Apply missed-day penalties, streak resets and milestone bonuses for ``today``.

        Runs at most once per family and day. During a family holiday nothing
        is reset or penalised, but bonuses that were already earned are paid.
        """

        def operation(uow: UnitOfWork) -> SweepReport:
            session = uow.session
            settings = settings_for(session, family_id)
            done = session.exec(
                select(SweepRun).where(SweepRun.family_id == family_id, SweepRun.day == today)
            ).first()
            if done is not None:
                return SweepReport(family_id=family_id, day=today, already_ran=True, ran_at=done.ran_at)
            run = SweepRun(family_id=family_id, day=today)
            session.add(run)
            session.flush()

            report = SweepReport(family_id=family_id, day=today, ran_at=run.ran_at)
            report.holiday = settings.holiday_covers(today)
            children = session.exec(
                select(Child).where(Child.family_id == family_id, Child.active == True)  # noqa: E712
            ).all()
            for child in children:
                self._sweep_child(uow, settings, child, today, report)

            uow.after_commit(
                lambda: self._logger.log(
                    "sweep_completed",
                    family_id=family_id,
                    day=today.isoformat(),
                    holiday=report.holiday,
                    penalties=len(report.penalties),
                    bonuses=len(report.bonuses),
                )
            )
            return report

        return self._db.run(operation)

    def _sweep_child(
        self,
        uow: UnitOfWork,
        settings: FamilySettings,
        child: Child,
        today: date,
        report: SweepReport,
    ) -> None:
        session = uow.session
        streak = self._child_streak(session, child.family_id, child.id)
        claim_version(session, streak)

        if report.holiday or child.holiday_covers(today):
            report.protected.append(child.id)
        elif self._active_on(session, child, today):
            streak.consecutive_missed = 0
        else:
            streak.consecutive_missed += 1
            over = streak.consecutive_missed - settings.streak_protection_days
            if over <= 0:
                report.protected.append(child.id)
            else:
                self._reset_streaks(session, child, streak)
                if settings.penalty_enabled:
                    penalty = self._apply_penalty(uow, settings, child, today, over)
                    if penalty is not None:
                        report.penalties[child.id] = penalty

        bonus = self._apply_bonus(uow, settings, child, streak)
        if bonus is not None:
            report.bonuses[child.id] = bonus
        streak.last_swept_day = today
        session.add(streak)
        session.flush()

    @staticmethod
    def _active_on(session: Session, child: Child, day: date) -> bool:
        return (
            session.exec(
                select(ActivityDay.id).where(
                    ActivityDay.family_id == child.family_id,
                    ActivityDay.child_id == child.id,
                    ActivityDay.day == day,
                )
            ).first()
            is not None
        )

    @staticmethod
    def _reset_streaks(session: Session, child: Child, streak: ChildStreak) -> None:
        streak.current = 0
        streak.is_disrupted = True
        task_streaks = session.exec(
            select(Streak).where(Streak.family_id == child.family_id, Streak.child_id == child.id)
        ).all()
        for row in task_streaks:
            if row.current == 0:
                continue
            claim_version(session, row)
            row.current = 0
            row.is_disrupted = True
            session.add(row)

    def _apply_penalty(
        self,
        uow: UnitOfWork,
        settings: FamilySettings,
        child: Child,
        today: date,
        tier: int,
    ) -> Optional[Tuple[int, int]]:
        money, stars = _tier_amounts(settings, tier)
        wallet = self._ledger.wallet_for(uow.session, child.family_id, child.id)
        # Clamp so the penalty never takes the wallet under the family floor.
        money = max(0, min(money, wallet.balance_pence - settings.min_balance_pence))
        stars = max(0, min(stars, wallet.stars - settings.min_balance_stars))
        if money == 0 and stars == 0:
            return None
        self._ledger.apply_debit(
            uow,
            child.family_id,
            child.id,
            money,
            stars,
            TransactionReason.STREAK_PENALTY,
            None,
            allow_below_floor=True,
            metadata={"day": today.isoformat(), "tier": min(tier, 3)},
            idempotency_key=f"streak-penalty:{child.id}:{today.isoformat()}",
        )
        uow.after_commit(
            lambda: self._logger.log(
                "streak_penalty", family_id=child.family_id, child_id=child.id, money=money, stars=stars, tier=tier
            )
        )
        return money, stars

    def _apply_bonus(
        self,
        uow: UnitOfWork,
        settings: FamilySettings,
        child: Child,
        streak: ChildStreak,
    ) -> Optional[Tuple[int, int]]:
        interval = max(1, settings.bonus_interval_days)
        if not settings.bonus_enabled or streak.current <= 0 or streak.current % interval:
            return None
        bonus_type = AwardType(settings.bonus_type)
        money = settings.bonus_money_pence if bonus_type.includes_money else 0
        stars = settings.bonus_stars if bonus_type.includes_stars else 0
        if money <= 0 and stars <= 0:
            return None
        started = streak.started_on.isoformat() if streak.started_on else "-"
        key = f"streak-bonus:{child.id}:{started}:{streak.current}"
        paid = uow.session.exec(
            select(WalletTransaction.id).where(WalletTransaction.idempotency_key == key)
        ).first()
        if paid is not None:
            return None
        entry = self._ledger.apply_credit(
            uow,
            child.family_id,
            child.id,
            max(money, 0),
            max(stars, 0),
            TransactionReason.STREAK_BONUS,
            None,
            metadata={"streakLength": streak.current, "startedOn": started},
            idempotency_key=key,
        )
        uow.after_commit(
            lambda: self._logger.log(
                "streak_bonus",
                family_id=child.family_id,
                child_id=child.id,
                streak=streak.current,
                transaction_id=entry.id,
            )
        )
        return entry.money_delta, entry.star_delta

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def get_stats(self, family_id: str, child_id: str) -> StreakStats:
        def query(session: Session) -> StreakStats:
            get_scoped(session, Child, family_id, child_id, label="Child")
            aggregate = session.exec(
                select(ChildStreak).where(ChildStreak.family_id == family_id, ChildStreak.child_id == child_id)
            ).first()
            active_days = session.exec(
                select(func.count(func.distinct(ActivityDay.day))).where(
                    ActivityDay.family_id == family_id, ActivityDay.child_id == child_id
                )
            ).one()
            rows = session.exec(
                select(Streak)
                .where(Streak.family_id == family_id, Streak.child_id == child_id)
                .order_by(Streak.task_id)
            ).all()
            current = aggregate.current if aggregate else 0
            return StreakStats(
                current_streak=current,
                best_streak=aggregate.best if aggregate else 0,
                total_active_days=int(active_days or 0),
                streak_bonus_percent=streak_bonus_percent(current),
                per_task=[
                    TaskStreak(
                        task_id=row.task_id,
                        current=row.current,
                        best=row.best,
                        last_activity_day=row.last_activity_day,
                        is_disrupted=row.is_disrupted,
                    )
                    for row in rows
                ],
            )

        return self._db.read(query)

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------
    @staticmethod
    def _task_streak(session: Session, family_id: str, child_id: str, task_id: str) -> Streak:
        row = session.exec(
            select(Streak).where(
                Streak.family_id == family_id, Streak.child_id == child_id, Streak.task_id == task_id
            )
        ).first()
        if row is None:
            row = Streak(family_id=family_id, child_id=child_id, task_id=task_id)
            session.add(row)
            session.flush()
        return row

    @staticmethod
    def _child_streak(session: Session, family_id: str, child_id: str) -> ChildStreak:
        row = session.exec(
            select(ChildStreak).where(ChildStreak.family_id == family_id, ChildStreak.child_id == child_id)
        ).first()
        if row is None:
            row = ChildStreak(family_id=family_id, child_id=child_id)
            session.add(row)
            session.flush()
        return row

    @staticmethod
    def _family_streak(session: Session, family_id: str) -> FamilyStreak:
        row = session.exec(select(FamilyStreak).where(FamilyStreak.family_id == family_id)).first()
        if row is None:
            row = FamilyStreak(family_id=family_id)
            session.add(row)
            session.flush()
        return row

    def family_streak(self, family_id: str) -> Optional[FamilyStreak]:
        return self._db.read(
            lambda session: session.exec(select(FamilyStreak).where(FamilyStreak.family_id == family_id)).first()
        )


__all__ = ["StreakCalculator", "advance", "missed_days", "streak_bonus_percent"]
