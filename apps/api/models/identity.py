"""Identity model mirrored from the identity provider."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func

from database import Base


class Identity(Base):
    """Authenticated identity. The id is the opaque uid used as ledger key."""

    __tablename__ = "identities"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
