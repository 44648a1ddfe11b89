from datetime import datetime
from typing import Optional, Dict, Any, List, Sequence, Tuple

from pymongo import MongoClient, ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

COLLECTIONS = (
    "users",
    "students",
    "faculty",
    "courses",
    "grades",
    "attendance",
    "sessions",
    "fee_structures",
    "student_fees",
    "payments",
    "announcements",
    "course_materials",
    "departments",
    "academic_periods",
    "academic_reports",
    "activity_reports",
    "trainer_reports",
    "student_daily_reports",
    "interactions",
    "audit_logs",
    "system_settings",
)

# Values a new document gets unless the caller sets them
COLLECTION_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "users": {"status": "Active", "must_change_password": True},
    "students": {"status": "Active", "gpa": 0},
    "faculty": {"status": "Active", "courses": []},
    "courses": {"status": "Active", "enrolled": 0},
    "announcements": {"category": "General", "priority": "Normal"},
    "student_fees": {"total_due": 0, "total_paid": 0, "balance": 0, "status": "Pending"},
    "payments": {"status": "Completed"},
    "academic_periods": {"is_active": False, "status": "Upcoming"},
}

INDEXES: Dict[str, List[Tuple[List[Tuple[str, int]], bool]]] = {
    "users": [([("email", ASCENDING)], True)],
    "students": [([("id", ASCENDING)], True), ([("email", ASCENDING)], True), ([("course", ASCENDING)], False)],
    "faculty": [([("id", ASCENDING)], True), ([("email", ASCENDING)], True)],
    "courses": [([("id", ASCENDING)], True), ([("name", ASCENDING)], False)],
    "grades": [([("student_id", ASCENDING), ("course", ASCENDING)], False)],
    "attendance": [
        ([("student_id", ASCENDING), ("course", ASCENDING), ("date", ASCENDING)], False),
        ([("date", DESCENDING)], False),
    ],
    "sessions": [([("teacher_email", ASCENDING)], False)],
    "student_fees": [([("student_id", ASCENDING)], True)],
    "payments": [([("student_id", ASCENDING)], False)],
    "fee_structures": [([("course_id", ASCENDING)], False)],
    "course_materials": [([("course_id", ASCENDING)], False)],
    "departments": [([("name", ASCENDING)], True)],
    "interactions": [([("student_id", ASCENDING)], False)],
    "academic_reports": [([("student_id", ASCENDING)], False)],
    "student_daily_reports": [([("student_id", ASCENDING), ("report_date", ASCENDING)], False)],
    "audit_logs": [([("created_at", DESCENDING)], False)],
    "system_settings": [([("key", ASCENDING)], True)],
}


class MongoDBManager:
    """Manages MongoDB operations for the academic records collections"""

    def __init__(
        self,
        mongo_uri: str,
        db_name: str = "academic_records",
        create_indexes: bool = True,
        timeout_ms: int = 10000,
    ):
        """
        Initialize MongoDB connection

        Args:
            mongo_uri: MongoDB connection URI
            db_name: Name of the database to use
            create_indexes: Ensure collection indexes right away
            timeout_ms: Server selection timeout
        """
        try:
            self.client = MongoClient(mongo_uri, serverSelectionTimeoutMS=timeout_ms)
            self.db = self.client[db_name]

            if create_indexes:
                self.ensure_indexes()

            print("🍃 MongoDB connection established successfully")
        except PyMongoError as e:
            print(f"❌ Failed to connect to MongoDB: {e}")
            raise

    @property
    def handle(self):
        return self.db

    def collection(self, name: str):
        if name not in COLLECTIONS:
            raise ValueError(f"Unknown collection '{name}'")
        return self.db[name]

    # ==================== INDEXES ====================

    def _ensure_index(self, collection, keys: List[Tuple[str, int]], *, unique: bool = False):
        """Create an index if missing; if a conflicting index exists, attempt to fix it."""
        desired_key = list(keys)
        existing = collection.index_information()

        # Same key pattern with different uniqueness gets replaced
        for name, info in existing.items():
            if list(info.get("key", [])) == desired_key:
                existing_unique = bool(info.get("unique", False))
                if unique == existing_unique:
                    return
                try:
                    collection.drop_index(name)
                except PyMongoError as drop_err:
                    print(f"⚠️ Warning: Could not drop conflicting index {name}: {drop_err}")
                    return
                break

        try:
            collection.create_index(keys, unique=unique)
        except PyMongoError as create_err:
            # Existing duplicates block a unique index; keep serving
            print(f"⚠️ Warning: Could not create index {desired_key} (unique={unique}): {create_err}")

    def ensure_indexes(self):
        """Create database indexes for efficient queries"""
        for name, specs in INDEXES.items():
            for keys, unique in specs:
                self._ensure_index(self.db[name], keys, unique=unique)
        print("✅ MongoDB indexes ensured")

    # ==================== HELPERS ====================

    def _id_variants(self, record_id: Any) -> List[Any]:
        """Return possible representations of a record id (string/int) to safely query MongoDB."""
        if record_id is None:
            return []

        variants: List[Any] = []

        if isinstance(record_id, str):
            s = record_id.strip()
            variants.append(s)
            try:
                variants.append(int(s))
            except (ValueError, TypeError):
                pass
        else:
            variants.append(record_id)
            variants.append(str(record_id))

        # Type matters in MongoDB, so de-dupe on (type, value)
        deduped: List[Any] = []
        seen = set()
        for v in variants:
            key = (type(v), v)
            if key in seen:
                continue
            seen.add(key)
            deduped.append(v)

        return deduped

    def _filter(self, name: str, filt: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        filt = self._prepare(name, filt or {})
        record_id = filt.get("id")
        if record_id is not None and not isinstance(record_id, dict):
            filt["id"] = {"$in": self._id_variants(record_id)}
        return filt

    def _now(self) -> str:
        return datetime.utcnow().isoformat()

    def _prepare(self, name: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(document)
        if name == "users" and isinstance(doc.get("email"), str):
            doc["email"] = doc["email"].strip().lower()
        return doc

    # ==================== DOCUMENT OPERATIONS ====================

    def insert_document(self, name: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document with defaults and timestamps; returns it without _id"""
        now = self._now()
        doc = {**COLLECTION_DEFAULTS.get(name, {}), **self._prepare(name, document)}
        doc.setdefault("created_at", now)
        doc["updated_at"] = now

        try:
            self.collection(name).insert_one(doc)
        except DuplicateKeyError:
            raise ValueError(f"A {name} record with the same unique key already exists")

        doc.pop("_id", None)
        return doc

    def find_documents(
        self,
        name: str,
        filt: Optional[Dict[str, Any]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self.collection(name).find(self._filter(name, filt), {"_id": 0})
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def find_document(self, name: str, filt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.collection(name).find_one(self._filter(name, filt), {"_id": 0})

    def update_document(self, name: str, filt: Dict[str, Any], updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply $set updates and return the updated document, or None if nothing matched"""
        changes = {**self._prepare(name, updates), "updated_at": self._now()}
        return self.collection(name).find_one_and_update(
            self._filter(name, filt),
            {"$set": changes},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    def upsert_document(self, name: str, filt: Dict[str, Any], document: Dict[str, Any]) -> Dict[str, Any]:
        """Update the matching document or insert it with defaults"""
        now = self._now()
        changes = {**self._prepare(name, document), "updated_at": now}
        seed = {**COLLECTION_DEFAULTS.get(name, {}), "created_at": now}

        # An $in match is not copied into an inserted document, so the id is seeded explicitly
        record_id = (filt or {}).get("id")
        if record_id is not None and not isinstance(record_id, dict):
            seed["id"] = record_id

        on_insert = {key: value for key, value in seed.items() if key not in changes}
        update: Dict[str, Any] = {"$set": changes}
        if on_insert:
            update["$setOnInsert"] = on_insert

        try:
            return self.collection(name).find_one_and_update(
                self._filter(name, filt),
                update,
                projection={"_id": 0},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ValueError(f"A {name} record with the same unique key already exists")

    def delete_document(self, name: str, filt: Dict[str, Any]) -> bool:
        result = self.collection(name).delete_one(self._filter(name, filt))
        return result.deleted_count > 0

    def count_documents(self, name: str, filt: Optional[Dict[str, Any]] = None) -> int:
        return self.collection(name).count_documents(self._filter(name, filt))

    # ==================== DATABASE STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        counts = {name: self.db[name].count_documents({}) for name in COLLECTIONS}
        return {
            "database": "mongodb",
            "collections": counts,
            "total_records": sum(counts.values()),
            "timestamp": self._now(),
        }

    def close(self):
        self.client.close()
