"""
Skew History Store
==================

Append-only MongoDB history of computed skews (collection: skew_snapshots).

persist_snapshot() is best effort: a failed write is logged and swallowed so
a database problem can never fail or retry the user-visible computation.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from models.schemas import SkewResult
from utils.symbol_normalization import cache_key

logger = logging.getLogger(__name__)

COLLECTION = "skew_snapshots"
DEFAULT_HISTORY_LIMIT = 100


class HistoryStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @property
    def collection(self):
        return self.db[COLLECTION]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("symbol", 1), ("timestamp", -1)])

    async def persist_snapshot(self, symbol: str, result: SkewResult) -> None:
        doc = {
            "symbol": cache_key(symbol),
            "oi_skew": result.skew,
            "pricing_skew": result.pricing_skew,
            "implied_move": result.implied_move,
            "underlying_price": result.underlying_price,
            "dte": result.dte,
            "expiration_date": result.expiration_date.isoformat(),
            "call_oi": result.call_oi,
            "put_oi": result.put_oi,
            "call_delta": result.call_delta,
            "put_delta": result.put_delta,
            "timestamp": datetime.now(timezone.utc),
        }
        try:
            await self.collection.insert_one(doc)
            logger.info(f"[DB] Saved skew snapshot for {doc['symbol']}")
        except Exception as e:
            logger.error(f"[DB] Failed to save snapshot for {doc['symbol']}: {e}")

    async def get_skew_history(
        self,
        symbol: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Snapshots for one symbol, newest first, optionally bounded by date."""
        query: Dict[str, Any] = {"symbol": cache_key(symbol)}
        if start_date or end_date:
            query["timestamp"] = {}
            if start_date:
                query["timestamp"]["$gte"] = start_date
            if end_date:
                query["timestamp"]["$lte"] = end_date

        cursor = self.collection.find(query, {"_id": 0}).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(limit)

    async def get_tracked_symbols(self) -> List[str]:
        symbols = await self.collection.distinct("symbol")
        return sorted(symbols)

    async def get_latest_snapshots(self) -> List[Dict[str, Any]]:
        """The most recent snapshot of every tracked symbol."""
        latest = []
        for symbol in await self.get_tracked_symbols():
            doc = await self.collection.find_one({"symbol": symbol}, {"_id": 0}, sort=[("timestamp", -1)])
            if doc:
                latest.append(doc)
        return latest
