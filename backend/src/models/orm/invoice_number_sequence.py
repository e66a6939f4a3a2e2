from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, mapped_column

from src.models.orm.base import Base


class InvoiceNumberSequence(Base):
    """Per-year counter backing sequential invoice numbers."""

    __tablename__ = "invoice_number_sequences"

    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
