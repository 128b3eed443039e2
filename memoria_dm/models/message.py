from datetime import datetime
from typing import TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    # insertion order, issued by the counters collection
    seq: int
    sender_id: str
    receiver_id: str
    # "<min id>:<max id>" of the two participants
    pair_key: str
    content: str
    created_at: datetime
    # only ever flips false -> true
    is_read: bool
