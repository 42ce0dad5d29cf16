from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey, JSON,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from backend.database import Base


class FamilyRole(str, enum.Enum):
    OWNER = "OWNER"
    MEMBER = "MEMBER"


class BankProviderType(str, enum.Enum):
    GOCARDLESS = "GOCARDLESS"
    PLAID = "PLAID"


class AccountType(str, enum.Enum):
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    CREDIT_CARD = "CREDIT_CARD"
    INVESTMENT = "INVESTMENT"
    LOAN = "LOAN"
    OTHER = "OTHER"


class TransactionType(str, enum.Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, enum.Enum):
    NEEDS_CATEGORIZATION = "NEEDS_CATEGORIZATION"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    IN_PROGRESS = "IN_PROGRESS"
    RECONCILED = "RECONCILED"


class Family(Base):
    __tablename__ = "families"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    members = relationship("FamilyMember", back_populates="family")
    bank_connections = relationship("BankConnection", back_populates="family")
    financial_accounts = relationship("FinancialAccount", back_populates="family")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    family_memberships = relationship("FamilyMember", back_populates="user")


class FamilyMember(Base):
    __tablename__ = "family_members"

    family_id = Column(Integer, ForeignKey("families.id"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    role = Column(SQLEnum(FamilyRole), nullable=False, default=FamilyRole.MEMBER)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())

    family = relationship("Family", back_populates="members")
    user = relationship("User", back_populates="family_memberships")


class FinancialAccount(Base):
    __tablename__ = "financial_accounts"

    id = Column(Integer, primary_key=True, index=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False)
    name = Column(String(255), nullable=False)
    account_type = Column(SQLEnum(AccountType), nullable=False, default=AccountType.OTHER)
    balance = Column(DECIMAL(15, 2), default=0.00)
    currency = Column(String(3), nullable=False, default="EUR")
    institution = Column(String(255), nullable=True)
    account_number = Column(String(50), nullable=True)  # Masked, e.g. ****1234
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    family = relationship("Family", back_populates="financial_accounts")
    transactions = relationship("Transaction", back_populates="account")
    connected_account = relationship("ConnectedAccount", back_populates="financial_account", uselist=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "external_transaction_id", name="uq_transactions_account_external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False)
    account_id = Column(Integer, ForeignKey("financial_accounts.id"), nullable=False)
    transaction_date = Column(Date, nullable=False)
    description = Column(String(500), nullable=False)
    merchant = Column(String(255), nullable=True)
    amount = Column(DECIMAL(15, 2), nullable=False)  # Always non-negative, sign lives in transaction_type
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.NEEDS_CATEGORIZATION)
    currency = Column(String(3), nullable=True)
    pending = Column(Boolean, default=False)
    tags = Column(JSON, default=list)

    # Provider identifiers (shared across aggregators)
    external_transaction_id = Column(String(255), nullable=True, index=True)
    bank_transaction_code = Column(String(100), nullable=True)
    proprietary_transaction_code = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("FinancialAccount", back_populates="transactions")


# Bank Integration Models

class BankConnection(Base):
    __tablename__ = "bank_connections"

    id = Column(Integer, primary_key=True, index=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False)
    provider = Column(SQLEnum(BankProviderType), nullable=False)

    # Access credential (encrypted). Requisition id for GoCardless, item access token for Plaid.
    access_token = Column(Text, nullable=False)
    item_id = Column(String(255), nullable=False)

    # Institution metadata
    institution_id = Column(String(255), nullable=True)
    institution_name = Column(String(255), nullable=True)
    institution_logo = Column(String(500), nullable=True)
    institution_country = Column(String(2), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    family = relationship("Family", back_populates="bank_connections")
    connected_accounts = relationship("ConnectedAccount", back_populates="connection", cascade="all, delete-orphan")


class ConnectedAccount(Base):
    __tablename__ = "connected_accounts"
    __table_args__ = (
        UniqueConstraint("connection_id", "provider_account_id", name="uq_connected_accounts_connection_account"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("bank_connections.id"), nullable=False)
    financial_account_id = Column(Integer, ForeignKey("financial_accounts.id"), nullable=True)

    provider_account_id = Column(String(255), nullable=False)
    account_name = Column(String(255), nullable=False)
    account_type = Column(String(50), nullable=True)
    account_subtype = Column(String(100), nullable=True)
    iban = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    connection = relationship("BankConnection", back_populates="connected_accounts")
    financial_account = relationship("FinancialAccount", back_populates="connected_account")
