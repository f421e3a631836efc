#=================================================================
# models.py (wallet ledger + contests + play trackers + notifications)
#=================================================================
import enum
import uuid

from sqlalchemy import (
    Column, String, Integer, BigInteger, ForeignKey, Text, Boolean, JSON,
    CheckConstraint, UniqueConstraint, Index, Uuid, Enum as SAEnum,
)
from sqlalchemy.orm import relationship

from base import Base  # from base.py
from utils.money import Money


# ================================================================
# ENUMS (stored as their stable string tag)
# ================================================================
class WalletTransactionType(str, enum.Enum):
    ADD_BALANCE = "ADD_BALANCE"
    WITHDRAW = "WITHDRAW"
    PAY_FOR_CONTEST = "PAY_FOR_CONTEST"
    CONTEST_WIN = "CONTEST_WIN"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    REFERRER_BONUS = "REFERRER_BONUS"
    REFUND_CONTEST_ENTRY_FEE = "REFUND_CONTEST_ENTRY_FEE"


class WalletTransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class ContestStatus(str, enum.Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"
    ENDED = "ENDED"


class PrizeSelection(str, enum.Enum):
    TOP_WINNERS = "TOP_WINNERS"
    RATIO_BASED = "RATIO_BASED"


class PlayTrackerStatus(str, enum.Enum):
    INIT = "INIT"
    PAID = "PAID"
    STARTED = "STARTED"
    FINISHED = "FINISHED"
    ENDED = "ENDED"


class NotificationType(str, enum.Enum):
    PUSH_MESSAGE = "PUSH_MESSAGE"
    SMS_MESSAGE = "SMS_MESSAGE"
    EMAIL_MESSAGE = "EMAIL_MESSAGE"


class NotificationReqStatus(str, enum.Enum):
    NEW = "NEW"
    READY_TO_SEND = "READY_TO_SEND"
    SENT = "SENT"
    ERROR = "ERROR"


def enum_column(enum_cls, **kwargs) -> Column:
    """Every enum column goes through here: VARCHAR holding the member's value."""
    return Column(
        SAEnum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        **kwargs,
    )


# ================================================================
# 1. USERS
# ================================================================
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, default="")
    tg_id = Column(BigInteger, unique=True, nullable=True)  # push delivery address
    is_active = Column(Boolean, default=True, nullable=False)

    referral_code = Column(String(16), unique=True, nullable=True)
    has_used_referral_code = Column(Boolean, default=False, nullable=False)
    used_referral_code = Column(String(16), nullable=True)
    referred_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Aggregates maintained by contest settlement
    total_played = Column(Integer, default=0, nullable=False)
    contest_won = Column(Integer, default=0, nullable=False)
    total_earning_real = Column(BigInteger, default=0, nullable=False)
    total_earning_bonus = Column(BigInteger, default=0, nullable=False)

    created_ts = Column(BigInteger, nullable=True)
    updated_ts = Column(BigInteger, nullable=True)

    def leaderboard_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "totalPlayed": self.total_played,
            "contestWon": self.contest_won,
            "totalEarning": {"real": self.total_earning_real, "bonus": self.total_earning_bonus},
        }


# ================================================================
# 2. SPECIAL REFERRAL CODES
# ================================================================
class SpecialReferralCode(Base):
    __tablename__ = "special_referral_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    referral_code = Column(String(16), unique=True, nullable=False)
    bonus = Column(BigInteger, nullable=False)
    valid_till = Column(BigInteger, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_ts = Column(BigInteger, nullable=True)


# ================================================================
# 3. WALLETS (one row per user)
# ================================================================
class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, unique=True, nullable=False, index=True)

    balance_real = Column(BigInteger, default=0, nullable=False)
    balance_bonus = Column(BigInteger, default=0, nullable=False)
    balance_withdrawable = Column(BigInteger, default=0, nullable=False)

    created_ts = Column(BigInteger, nullable=True)
    updated_ts = Column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("balance_real >= 0", name="check_wallet_real_non_negative"),
        CheckConstraint("balance_bonus >= 0", name="check_wallet_bonus_non_negative"),
        CheckConstraint("balance_withdrawable >= 0", name="check_wallet_withdrawable_non_negative"),
    )

    @property
    def balance(self) -> Money:
        return Money(self.balance_real, self.balance_bonus, self.balance_withdrawable)


# ================================================================
# 4. WALLET TRANSACTIONS (append-only ledger)
# ================================================================
class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Integer, nullable=False, index=True)
    transaction_type = enum_column(WalletTransactionType, nullable=False)
    status = enum_column(WalletTransactionStatus, nullable=False)

    amount_real = Column(BigInteger, default=0, nullable=False)
    amount_bonus = Column(BigInteger, default=0, nullable=False)

    balance_before = Column(JSON, nullable=False)
    balance_after = Column(JSON, nullable=True)

    tracking_id = Column(String, nullable=True)
    remarks = Column(Text, nullable=True)
    receiver_upi_id = Column(String, nullable=True)
    error_reason = Column(Text, nullable=True)

    created_ts = Column(BigInteger, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_ts = Column(BigInteger, nullable=True)
    updated_by = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_wallet_tx_user_type_status", "user_id", "transaction_type", "status"),
    )

    @property
    def amount(self) -> Money:
        return Money(self.amount_real, self.amount_bonus)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "userId": self.user_id,
            "transactionType": self.transaction_type.value,
            "status": self.status.value,
            "amount": self.amount.to_dict(),
            "balanceBefore": self.balance_before,
            "balanceAfter": self.balance_after,
            "trackingId": self.tracking_id,
            "remarks": self.remarks,
            "receiverUpiId": self.receiver_upi_id,
            "errorReason": self.error_reason,
            "createdTs": self.created_ts,
            "updatedTs": self.updated_ts,
        }


# ================================================================
# 5. CONTESTS
# ================================================================
class Contest(Base):
    __tablename__ = "contests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)

    entry_fee = Column(BigInteger, default=0, nullable=False)
    entry_fee_max_bonus_money = Column(BigInteger, default=0, nullable=False)

    prize_selection = enum_column(PrizeSelection, nullable=False)
    top_winners_count = Column(Integer, nullable=True)
    prize_ratio_numerator = Column(Integer, nullable=True)
    prize_ratio_denominator = Column(Integer, nullable=True)
    prize_value_real = Column(BigInteger, default=0, nullable=False)
    prize_value_bonus = Column(BigInteger, default=0, nullable=False)

    start_time = Column(BigInteger, nullable=False)
    end_time = Column(BigInteger, nullable=False)
    min_required_players = Column(Integer, default=0, nullable=False)
    status = enum_column(ContestStatus, nullable=False, default=ContestStatus.CREATED)

    # Settlement snapshot (denormalised for audit)
    final_ranking = Column(JSON, nullable=True)
    winners = Column(JSON, nullable=True)

    # Settlement failure bookkeeping
    error = Column(Text, nullable=True)
    error_ts = Column(BigInteger, nullable=True)
    settlement_attempts = Column(Integer, default=0, nullable=False)

    created_ts = Column(BigInteger, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_ts = Column(BigInteger, nullable=True)
    updated_by = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("entry_fee_max_bonus_money <= entry_fee", name="check_contest_bonus_le_fee"),
        Index("ix_contests_status_end_time", "status", "end_time"),
    )

    questions = relationship(
        "ContestQuestion",
        back_populates="contest",
        order_by="ContestQuestion.question_no",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def prize_money(self) -> Money:
        return Money(self.prize_value_real, self.prize_value_bonus)

    @property
    def active_questions(self) -> list["ContestQuestion"]:
        return [q for q in self.questions if q.is_active]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "entryFee": self.entry_fee,
            "entryFeeMaxBonusMoney": self.entry_fee_max_bonus_money,
            "prizeSelection": self.prize_selection.value,
            "topWinnersCount": self.top_winners_count,
            "prizeRatioNumerator": self.prize_ratio_numerator,
            "prizeRatioDenominator": self.prize_ratio_denominator,
            "prizeValueReal": self.prize_value_real,
            "prizeValueBonus": self.prize_value_bonus,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "minRequiredPlayers": self.min_required_players,
            "status": self.status.value,
        }


# =================================================================
# 6. CONTEST QUESTIONS
# =================================================================
class ContestQuestion(Base):
    __tablename__ = "contest_questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False)
    question_no = Column(Integer, nullable=False)
    question_text = Column(Text, nullable=False)
    options = Column(JSON, nullable=False)  # [{"optionId": 1, "optionText": "..."}]
    correct_option_id = Column(Integer, nullable=False)  # server-only, never projected
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("contest_id", "question_no", name="uq_contest_question_no"),
    )

    contest = relationship("Contest", back_populates="questions")

    def public_dict(self) -> dict:
        return {
            "questionNo": self.question_no,
            "questionText": self.question_text,
            "options": [
                {"optionId": o["optionId"], "optionText": o.get("optionText", "")}
                for o in self.options
            ],
            "isActive": self.is_active,
        }


# =================================================================
# 7. PLAY TRACKERS (one per user per contest)
# =================================================================
class PlayTracker(Base):
    __tablename__ = "play_trackers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False)
    status = enum_column(PlayTrackerStatus, nullable=False, default=PlayTrackerStatus.INIT)

    init_ts = Column(BigInteger, nullable=True)
    paid_ts = Column(BigInteger, nullable=True)
    start_ts = Column(BigInteger, nullable=True)
    finish_ts = Column(BigInteger, nullable=True)
    resume_ts = Column(JSON, nullable=False, default=list)

    wallet_transaction_id = Column(String, nullable=True)
    paid_real = Column(BigInteger, default=0, nullable=False)
    paid_bonus = Column(BigInteger, default=0, nullable=False)

    total_questions = Column(Integer, default=0, nullable=False)
    score = Column(Integer, default=0, nullable=False)
    time_taken = Column(BigInteger, nullable=True)
    rank = Column(Integer, nullable=True)

    created_ts = Column(BigInteger, nullable=True)
    updated_ts = Column(BigInteger, nullable=True)
    updated_by = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uq_play_tracker_contest_user"),
        Index("ix_play_trackers_contest_status", "contest_id", "status"),
    )

    answers = relationship(
        "PlayTrackerAnswer",
        back_populates="play_tracker",
        order_by="PlayTrackerAnswer.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def paid_amount(self) -> Money:
        return Money(self.paid_real, self.paid_bonus)

    @property
    def answered_question_nos(self) -> set[int]:
        return {a.question_no for a in self.answers}

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "contestId": self.contest_id,
            "status": self.status.value,
            "initTs": self.init_ts,
            "paidTs": self.paid_ts,
            "startTs": self.start_ts,
            "finishTs": self.finish_ts,
            "resumeTs": list(self.resume_ts or []),
            "walletTransactionId": self.wallet_transaction_id,
            "paidAmount": self.paid_amount.to_dict(),
            "totalQuestions": self.total_questions,
            "score": self.score,
            "answers": [a.to_dict() for a in self.answers],
            "timeTaken": self.time_taken,
            "rank": self.rank,
        }


class PlayTrackerAnswer(Base):
    __tablename__ = "play_tracker_answers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    play_tracker_id = Column(Integer, ForeignKey("play_trackers.id", ondelete="CASCADE"), nullable=False)
    question_no = Column(Integer, nullable=False)
    selected_option_id = Column(Integer, nullable=False)
    is_correct = Column(Boolean, default=False, nullable=False)
    answered_ts = Column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint("play_tracker_id", "question_no", name="uq_answer_tracker_question"),
    )

    play_tracker = relationship("PlayTracker", back_populates="answers")

    def to_dict(self) -> dict:
        # is_correct stays server-side
        return {"questionNo": self.question_no, "selectedOptionId": self.selected_option_id}


# =================================================================
# 8. NOTIFICATIONS
# =================================================================
class NotificationReq(Base):
    __tablename__ = "notification_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_name = Column(String, nullable=False)
    notification_type = enum_column(NotificationType, nullable=False, default=NotificationType.PUSH_MESSAGE)
    user_id = Column(Integer, nullable=False, index=True)
    data = Column(JSON, nullable=False, default=dict)
    status = enum_column(NotificationReqStatus, nullable=False, default=NotificationReqStatus.NEW)
    final_message = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    created_ts = Column(BigInteger, nullable=True)
    updated_ts = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_notification_requests_status_created", "status", "created_ts"),
    )


class NotificationContent(Base):
    __tablename__ = "notification_contents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_name = Column(String, unique=True, nullable=False)
    content = Column(Text, nullable=False)  # "Congrats {{name}} ..."


class Notification(Base):
    """Per-user inbox row written once a push is delivered."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_name = Column(String, nullable=False)
    notification_type = enum_column(NotificationType, nullable=False, default=NotificationType.PUSH_MESSAGE)
    user_id = Column(Integer, nullable=False, index=True)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    is_cleared = Column(Boolean, default=False, nullable=False)
    created_ts = Column(BigInteger, nullable=True)
    updated_ts = Column(BigInteger, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "eventName": self.event_name,
            "notificationType": self.notification_type.value,
            "userId": self.user_id,
            "message": self.message,
            "isRead": self.is_read,
            "isCleared": self.is_cleared,
            "createdTs": self.created_ts,
            "updatedTs": self.updated_ts,
        }
