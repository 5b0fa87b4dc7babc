"""
habitchain/features/stats/models.py
Derived statistics payloads. None of these are ever a source of truth.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class DailyPoint(BaseModel):
    day_key: str
    scheduled: int = 0
    completed: int = 0
    completion_rate: float = 0.0


class CategoryBreakdown(BaseModel):
    category: str
    habits: int
    completion_rate_30d: float = 0.0


class HabitStreakSummary(BaseModel):
    habit_id: str
    name: str
    current_streak: int
    longest_streak: int
    completion_rate_30d: float = 0.0


class HabitStats(BaseModel):
    user_id: str
    total_habits: int = 0
    active_habits: int = 0
    scheduled_today: int = 0
    completed_today: int = 0
    completion_rate_7d: float = 0.0
    completion_rate_30d: float = 0.0
    consistency_score: float = Field(default=0.0, description="% of scheduled days in the last 30 with every habit done")
    longest_streak: int = 0
    categories: List[CategoryBreakdown] = Field(default_factory=list)
    habits: List[HabitStreakSummary] = Field(default_factory=list)
    daily: List[DailyPoint] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    content_hash: str = ""
    generated_at: Optional[datetime] = None
    from_cache: bool = False
    stale: bool = False


class HabitAnalytics(BaseModel):
    user_id: str
    days: int
    completion_rate: float = 0.0
    total_scheduled: int = 0
    total_completed: int = 0
    daily: List[DailyPoint] = Field(default_factory=list)
