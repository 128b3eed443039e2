from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    username: str
    full_name: Optional[str]
    avatar_url: Optional[str]
