from .base import Base, Column, String, Integer, Date, DateTime


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), index=True, default="")
    name = Column(String(255), default="")
    picture = Column(String(500), default="")
    free_generations_left = Column(Integer, nullable=False, default=0)
    # 为空表示“未盖章”：今天的免费次数尚未被使用
    last_free_reset_day = Column(Date, nullable=True)
    paid_generations = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
