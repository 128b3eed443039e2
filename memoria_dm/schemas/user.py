from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class UserPublic(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    username: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "UserPublic":
        return cls(
            id=str(doc["_id"]),
            username=doc.get("username", ""),
            full_name=doc.get("full_name"),
            avatar_url=doc.get("avatar_url"),
        )
