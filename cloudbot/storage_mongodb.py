import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from cloudbot import config
from cloudbot.scoring import FILE_POINTS, REFERRAL_POINTS
from cloudbot.utils import utcnow
from cloudbot.write_queue import WriteQueue


def build_activity_pipeline(since: datetime, limit: int) -> List[Dict]:
    """Per-account upload/referral counts since `since`, scored and ranked.

    Runs against `users`; every account gets its in-window counts attached
    via correlated lookups, zero scores are dropped and the rest sorted by
    score then uploads, both descending.
    """
    return [
        {
            "$lookup": {
                "from": "files",
                "let": {"uid": "$user_id"},
                "pipeline": [
                    {"$match": {"$expr": {"$and": [
                        {"$eq": ["$owner_id", "$$uid"]},
                        {"$gte": ["$created_at", since]},
                    ]}}},
                    {"$count": "count"},
                ],
                "as": "_files",
            }
        },
        {
            "$lookup": {
                "from": "users",
                "let": {"uid": "$user_id"},
                "pipeline": [
                    {"$match": {"$expr": {"$and": [
                        {"$eq": ["$referred_by", "$$uid"]},
                        {"$gte": ["$created_at", since]},
                    ]}}},
                    {"$count": "count"},
                ],
                "as": "_refs",
            }
        },
        {
            "$addFields": {
                "file_count": {"$ifNull": [{"$arrayElemAt": ["$_files.count", 0]}, 0]},
                "referral_count": {"$ifNull": [{"$arrayElemAt": ["$_refs.count", 0]}, 0]},
            }
        },
        {
            "$addFields": {
                "score": {"$add": [
                    {"$multiply": ["$file_count", FILE_POINTS]},
                    {"$multiply": ["$referral_count", REFERRAL_POINTS]},
                ]}
            }
        },
        {"$match": {"score": {"$gt": 0}}},
        {"$sort": {"score": -1, "file_count": -1}},
        {"$limit": limit},
        {
            "$project": {
                "_id": 0, "user_id": 1, "first_name": 1, "username": 1,
                "score": 1, "file_count": 1, "referral_count": 1,
            }
        },
    ]


def build_window_facet(match: Dict, week_since: datetime, month_since: datetime,
                       with_total: bool = False) -> List[Dict]:
    facets = {
        "weekly": [{"$match": {"created_at": {"$gte": week_since}}}, {"$count": "count"}],
        "monthly": [{"$match": {"created_at": {"$gte": month_since}}}, {"$count": "count"}],
    }
    if with_total:
        facets["total"] = [{"$count": "count"}]
    return [{"$match": match}, {"$facet": facets}]


def facet_counts(result: List[Dict]) -> Dict[str, int]:
    """[{'weekly': [{'count': 3}], 'monthly': []}] -> {'weekly': 3, 'monthly': 0}"""
    doc = result[0] if result else {}
    return {name: (rows[0].get("count", 0) if rows else 0) for name, rows in doc.items()}


class MongoStorage:
    def __init__(self, mongo_url: str = None, db_name: str = None):
        mongo_url = mongo_url or config.MONGO_URL
        if not mongo_url:
            raise ValueError("MONGO_URL not found in environment")

        self.client = AsyncIOMotorClient(
            mongo_url,
            maxPoolSize=50,
            minPoolSize=5,
            maxIdleTimeMS=30000,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
            retryWrites=True,
            tz_aware=True,
        )
        self.db = self.client[db_name or config.DB_NAME]

        # Collections
        self.users = self.db['users']
        self.files = self.db['files']
        self.action_logs = self.db['action_logs']

        # Score snapshots are written back in batches
        self.write_queue = WriteQueue(self.db, flush_interval=config.WRITE_QUEUE_FLUSH_INTERVAL)

        logging.info("✅ Connected to MongoDB (Async/Motor + WriteQueue)")

    async def ensure_indexes(self):
        try:
            await asyncio.gather(
                self.users.create_index([("user_id", ASCENDING)], unique=True),
                self.users.create_index([("ref_code", ASCENDING)], unique=True, sparse=True),
                self.users.create_index([("referred_by", ASCENDING)]),
                self.users.create_index([("week_score", DESCENDING)]),
                self.users.create_index([("month_score", DESCENDING)]),
                self.users.create_index([("created_at", DESCENDING)]),
                self.users.create_index([("last_active_at", DESCENDING)]),
                self.users.create_index([("is_blocked", ASCENDING)]),
                self.files.create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)]),
                self.files.create_index([("file_unique_id", ASCENDING)], unique=True, sparse=True),
                self.files.create_index([("kind", ASCENDING)]),
                self.action_logs.create_index([("timestamp", DESCENDING)]),
            )
            logging.info("✅ Database indexes created")
        except Exception as e:
            logging.error(f"⚠️ Index creation error: {e}")

    # --- ACCOUNTS ---

    async def get_user(self, user_id: int) -> Optional[Dict]:
        return await self.users.find_one({"user_id": user_id}, {"_id": 0})

    async def create_user(self, doc: Dict) -> Dict:
        """Insert a new account; raises DuplicateKeyError on user_id/ref_code clash"""
        await self.users.insert_one(dict(doc))
        return doc

    async def touch_user(self, user_id: int, fields: Dict):
        await self.users.update_one(
            {"user_id": user_id},
            {"$set": {**fields, "updated_at": utcnow()}}
        )

    async def find_existing_ref_codes(self, codes: List[str]) -> set:
        cursor = self.users.find({"ref_code": {"$in": list(codes)}}, {"_id": 0, "ref_code": 1})
        return {doc["ref_code"] async for doc in cursor}

    async def find_user_by_ref_code(self, code: str) -> Optional[Dict]:
        return await self.users.find_one(
            {"ref_code": code},
            {"_id": 0, "user_id": 1, "first_name": 1}
        )

    async def set_ref_code(self, user_id: int, code: str) -> bool:
        """Assign a code only if the account has none yet"""
        result = await self.users.update_one(
            {"user_id": user_id, "ref_code": None},
            {"$set": {"ref_code": code, "updated_at": utcnow()}}
        )
        return result.modified_count > 0

    async def users_missing_ref_code(self, limit: int = 100) -> List[Dict]:
        cursor = self.users.find(
            {"ref_code": None},
            {"_id": 0, "user_id": 1, "first_name": 1}
        ).limit(limit)
        return await cursor.to_list(length=limit)

    async def set_referrer(self, user_id: int, referrer_id: int) -> bool:
        """Link `user_id` to `referrer_id` unless it already has a referrer"""
        result = await self.users.update_one(
            {"user_id": user_id, "referred_by": None},
            {"$set": {"referred_by": referrer_id, "updated_at": utcnow()}}
        )
        if result.modified_count == 0:
            return False
        await self.users.update_one({"user_id": referrer_id}, {"$inc": {"ref_count": 1}})
        return True

    # --- ACTIVITY ---

    async def add_file(self, doc: Dict) -> Any:
        result = await self.files.insert_one(dict(doc))
        return result.inserted_id

    async def count_files(self, owner_id: int, week_since: datetime, month_since: datetime) -> Dict[str, int]:
        result = await self.files.aggregate(
            build_window_facet({"owner_id": owner_id}, week_since, month_since, with_total=True)
        ).to_list(length=1)
        return facet_counts(result)

    async def count_referrals(self, referrer_id: int, week_since: datetime, month_since: datetime) -> Dict[str, int]:
        result = await self.users.aggregate(
            build_window_facet({"referred_by": referrer_id}, week_since, month_since)
        ).to_list(length=1)
        return facet_counts(result)

    async def aggregate_activity(self, since: datetime, limit: int) -> List[Dict]:
        cursor = self.users.aggregate(build_activity_pipeline(since, limit))
        return await cursor.to_list(length=limit)

    async def count_users_above(self, field: str, score: int) -> int:
        return await self.users.count_documents({field: {"$gt": score}})

    async def estimated_user_count(self) -> int:
        return await self.users.estimated_document_count()

    async def get_overview(self, since: datetime) -> Dict[str, int]:
        total_users, total_files, blocked, new_users, new_files = await asyncio.gather(
            self.users.estimated_document_count(),
            self.files.estimated_document_count(),
            self.users.count_documents({"is_blocked": True}),
            self.users.count_documents({"created_at": {"$gte": since}}),
            self.files.count_documents({"created_at": {"$gte": since}}),
        )
        return {
            "total_users": total_users,
            "total_files": total_files,
            "blocked_users": blocked,
            "new_users": new_users,
            "new_files": new_files,
        }

    # --- SCORES & BALANCES ---

    async def queue_scores(self, user_id: int, fields: Dict):
        """Write-back: buffered until the next WriteQueue flush"""
        await self.write_queue.set_fields('users', {"user_id": user_id}, fields)

    async def credit_reward(self, user_id: int, diamonds: int, awarded_at: datetime,
                            claimed_before: datetime) -> bool:
        """Credit once per cycle; the filter refuses a claim newer than `claimed_before`"""
        result = await self.users.update_one(
            {
                "user_id": user_id,
                "$or": [
                    {"ref_awarded_at": None},
                    {"ref_awarded_at": {"$lte": claimed_before}},
                ],
            },
            {"$inc": {"diamonds": diamonds}, "$set": {"ref_awarded_at": awarded_at}}
        )
        return result.modified_count > 0

    # --- BROADCAST ---

    async def recipients_page(self, after_id: Any, limit: int) -> List[Dict]:
        """Next page of deliverable accounts, keyset-paginated on `_id`"""
        query = {"is_blocked": {"$ne": True}}
        if after_id is not None:
            query["_id"] = {"$gt": after_id}
        cursor = self.users.find(query, {"_id": 1, "user_id": 1}).sort("_id", ASCENDING).limit(limit)
        return await cursor.to_list(length=limit)

    async def mark_blocked(self, user_id: int):
        await self.users.update_one(
            {"user_id": user_id},
            {"$set": {"is_blocked": True, "updated_at": utcnow()}}
        )

    # --- AUDIT ---

    async def log_action(self, user_id: int, action: str, details: Any = None):
        log_type = action.split(":")[0].upper() if ":" in action else (action.split() or ["UNKNOWN"])[0].upper()
        await self.action_logs.insert_one({
            "user_id": user_id,
            "type": log_type,
            "action": action,
            "details": details or {},
            "timestamp": utcnow(),
        })

    async def get_logs(self, limit: int = 20) -> List[Dict]:
        cursor = self.action_logs.find({}, {"_id": 0}).sort("timestamp", DESCENDING).limit(limit)
        return await cursor.to_list(length=limit)

    async def close(self):
        await self.write_queue.stop()
        self.client.close()
