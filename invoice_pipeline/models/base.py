from typing import Annotated, Any, Dict, Optional, Type, TypeVar
from pydantic import BaseModel, BeforeValidator, Field, ConfigDict

# ObjectIds travel through the API and the pipeline as plain strings
PyObjectId = Annotated[str, BeforeValidator(str)]

T = TypeVar("T", bound="MongoModel")

class MongoModel(BaseModel):
    """
    Base for persisted documents. The Mongo `_id` is exposed as `id`.
    """
    id: Optional[PyObjectId] = Field(default=None, alias="_id")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_mongo(cls: Type[T], document: Optional[Dict[str, Any]]) -> Optional[T]:
        if not document:
            return None
        fields = {k: v for k, v in document.items() if k != "_id"}
        return cls(id=document.get("_id"), **fields)

    def to_mongo(self, exclude_none: bool = False) -> Dict[str, Any]:
        """Document body for insert/$set. The id is owned by Mongo and never written back."""
        return self.model_dump(exclude={"id"}, exclude_none=exclude_none)
