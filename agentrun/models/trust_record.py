"""Trust record model — per-owner "always allow" grants."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from agentrun.database import Base


class TrustRecord(Base):
    """A tool name or integration id the owner approved permanently.

    Looked up by ``(owner_id, scope, key)``, which is also the unique key.
    """

    __tablename__ = "trust_records"
    __table_args__ = (
        UniqueConstraint("owner_id", "scope", "key", name="uq_trust_records_owner_scope_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)  # tool | integration
    key: Mapped[str] = mapped_column(String(200), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
