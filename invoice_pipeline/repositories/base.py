from typing import Generic, TypeVar, Any, Dict, List, Optional, Tuple
from motor.motor_asyncio import AsyncIOMotorCollection
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from invoice_pipeline.models.base import MongoModel

T = TypeVar("T", bound=MongoModel)

class BaseRepository(Generic[T]):
    def __init__(self, collection: AsyncIOMotorCollection, model_cls: type[T]):
        self.collection = collection
        self.model_cls = model_cls

    @staticmethod
    def _object_id(id: str) -> Optional[ObjectId]:
        try:
            return ObjectId(id)
        except (InvalidId, TypeError):
            return None

    async def get(self, id: str) -> Optional[T]:
        """Get a document by ID. Malformed ids are simply not found."""
        oid = self._object_id(id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return self.model_cls.from_mongo(doc)

    async def list(self, filter: Optional[Dict[str, Any]] = None, skip: int = 0, limit: int = 100,
                   sort: Optional[List[Tuple[str, int]]] = None) -> List[T]:
        cursor = self.collection.find(filter or {})
        if sort:
            cursor = cursor.sort(sort)
        docs = await cursor.skip(skip).limit(limit).to_list(length=limit)
        return [self.model_cls.from_mongo(doc) for doc in docs]

    async def create(self, model: T) -> T:
        result = await self.collection.insert_one(model.to_mongo())
        model.id = str(result.inserted_id)
        return model

    async def update(self, id: str, update_data: Dict[str, Any]) -> Optional[T]:
        """$set the given fields and return the updated document, or None if it does not exist."""
        oid = self._object_id(id)
        if oid is None:
            return None
        doc = await self.collection.find_one_and_update(
            {"_id": oid},
            {"$set": update_data},
            return_document=ReturnDocument.AFTER
        )
        return self.model_cls.from_mongo(doc)
