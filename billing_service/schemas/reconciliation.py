from pydantic import BaseModel
from typing import Dict, Any, List
from datetime import datetime


class JobReport(BaseModel):
    job: str
    processed_count: int
    fixed: List[Dict[str, Any]]
    skipped: List[Dict[str, Any]]
    errors: List[Dict[str, Any]]
    started_at: datetime
    finished_at: datetime | None = None
