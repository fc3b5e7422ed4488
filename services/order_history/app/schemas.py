from pydantic import BaseModel
from typing import List, Literal
from app.history.formatter import DisplayEntry
from app.history.snapshots import HistoryEntry

Direction = Literal["desc", "asc"]

class PageBase(BaseModel):
    order_id: int
    total: int
    page: int
    page_size: int
class HistoryPage(PageBase):
    items: List[HistoryEntry] = []
class DisplayPage(PageBase):
    items: List[DisplayEntry] = []
