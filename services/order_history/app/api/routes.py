from fastapi import APIRouter, Depends, HTTPException, Query
from app.api.deps import get_loader, get_store
from app.history.errors import MalformedSnapshot, SnapshotNotFound
from app.history.formatter import DisplayEntry, format_entry
from app.history.loader import SnapshotLoader
from app.history.snapshots import HistoryEntry, OrderSnapshot
from app.history.store import HistoryStore
from app.schemas import Direction, DisplayPage, HistoryPage

router = APIRouter()

@router.get("/v1/orders/{order_id}/history", response_model=HistoryPage)
def order_history(
    order_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    direction: Direction = "desc",
    store: HistoryStore = Depends(get_store),
):
    entries, total = store.list_by_order(order_id, page, page_size, newest_first=direction == "desc")
    return HistoryPage(order_id=order_id, total=total, page=page, page_size=page_size, items=entries)

@router.get("/v1/orders/{order_id}/history/display", response_model=DisplayPage)
def order_history_display(
    order_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    direction: Direction = "desc",
    store: HistoryStore = Depends(get_store),
):
    entries, total = store.list_by_order(order_id, page, page_size, newest_first=direction == "desc")
    return DisplayPage(
        order_id=order_id, total=total, page=page, page_size=page_size,
        items=[format_entry(e) for e in entries],
    )

@router.get("/v1/history/{entry_id}", response_model=HistoryEntry)
def history_entry(entry_id: int, store: HistoryStore = Depends(get_store)):
    entry = store.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    return entry

@router.get("/v1/history/{entry_id}/display", response_model=DisplayEntry)
def history_entry_display(entry_id: int, store: HistoryStore = Depends(get_store)):
    entry = store.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    return format_entry(entry)

@router.get("/v1/orders/{order_id}/snapshot", response_model=OrderSnapshot)
def order_snapshot(order_id: int, loader: SnapshotLoader = Depends(get_loader)):
    try:
        return loader.load(order_id)
    except SnapshotNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except MalformedSnapshot as e:
        raise HTTPException(status_code=500, detail=str(e))
