from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Index,
    Integer,
    String,
    Float,
    Boolean,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Voucher(Base):
    __tablename__ = "vouchers"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    product_name = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # IDR
    discounted_amount = Column(Integer, nullable=True)
    image = Column(String, nullable=True)

    # flipped false -> true only by a conditional UPDATE
    used = Column(Boolean, nullable=False, default=False)
    used_by = Column(String, nullable=True)
    used_at = Column(Float, nullable=True)
    expiry_date = Column(Float, nullable=True)  # used_at + 30 days
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_vouchers_product_used", "product_name", "used"),
    )


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True)
    # client-facing correlation key; NULL for callback-created rows
    temp_id = Column(String, nullable=True, unique=True)
    # gateway ids, set once the bill is accepted (or by the callback)
    transaction_id = Column(String, nullable=True, unique=True)
    bill_link_id = Column(String, nullable=True, index=True)

    email = Column(String, nullable=False)
    name = Column(String, nullable=False)
    product_name = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    discounted_amount = Column(Integer, nullable=True)
    voucher_code = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)

    # PENDING | SUCCESSFUL | CANCELLED | FAILED | EXPIRED
    status = Column(String, nullable=False, default="PENDING")
    expiry_date = Column(Float, nullable=True)  # PENDING deadline
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_transactions_status_expiry", "status", "expiry_date"),
        Index("idx_transactions_email_amount", "email", "amount"),
    )


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
