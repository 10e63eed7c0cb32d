from .base import Base, Column, String, Boolean, DateTime


class GenerationRecord(Base):
    __tablename__ = "generations"

    id = Column(String(255), primary_key=True, index=True)
    account_id = Column(String(255), index=True, nullable=False)
    image_url = Column(String(1000), nullable=False)
    provider = Column(String(32), nullable=False)
    is_free = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime)
