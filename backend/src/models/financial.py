"""Aggregated financial data models (bank users, accounts, transactions).

All rows hang off a Client; their foreign keys cascade so the database
never keeps financial data for a client that no longer exists.
"""

import uuid

from sqlalchemy import Column, Text, Numeric, DateTime, ForeignKey, Uuid

from .base import Base, PortableJSONB, utcnow


class BankUser(Base):
    __tablename__ = "bank_user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Text, ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False, index=True)
    bank_user_id = Column(Text, nullable=False)
    name = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    metadata_json = Column(PortableJSONB, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Account(Base):
    __tablename__ = "account"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Text, ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False, index=True)
    bank_user_id = Column(Text, nullable=False)
    account_id = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    subtype = Column(Text, nullable=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(Text, nullable=False, default="USD")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "account_id": self.account_id,
            "name": self.name,
            "type": self.type,
            "subtype": self.subtype,
            "balance": str(self.balance) if self.balance is not None else None,
            "currency": self.currency,
        }


class Transaction(Base):
    """Bank transaction; aged out by `date` independently of the owner."""
    __tablename__ = "transaction"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("account.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = Column(Text, nullable=False, unique=True)
    date = Column(DateTime, nullable=False, index=True)
    description = Column(Text, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    category = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "transaction_id": self.transaction_id,
            "date": self.date.isoformat(),
            "description": self.description,
            "amount": str(self.amount),
            "category": self.category,
        }
