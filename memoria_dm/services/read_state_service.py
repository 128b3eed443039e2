import logging
from typing import List

from memoria_dm.repositories.message_repository import MessageRepository


logger = logging.getLogger(__name__)


class ReadStateReconciler:
    """Marks messages read without racing concurrent sends.

    A read first snapshots the sequence numbers of the unread messages that
    are already stored, then flips only those, still filtered by
    ``is_read: false`` at write time. A message inserted after the snapshot
    stays unread even if its sequence number was issued earlier.
    """

    def __init__(self, message_repo: MessageRepository) -> None:
        self._message_repo = message_repo

    async def mark_conversation_read(self, viewer_id: str, partner_id: str) -> int:
        snapshot = await self._message_repo.unread_sequences(viewer_id, partner_id)
        return await self.mark_snapshot_read(viewer_id, partner_id, snapshot)

    async def mark_snapshot_read(self, viewer_id: str, partner_id: str, snapshot: List[int]) -> int:
        updated = await self._message_repo.mark_read(viewer_id, partner_id, seqs=snapshot)
        logger.info("Marked %s of %s messages read viewer=%s partner=%s", updated, len(snapshot), viewer_id, partner_id)
        return updated

    async def mark_all_read(self, viewer_id: str) -> int:
        snapshot = await self._message_repo.unread_sequences(viewer_id)
        updated = await self._message_repo.mark_read(viewer_id, seqs=snapshot)
        logger.info("Marked %s messages read viewer=%s (all partners)", updated, viewer_id)
        return updated

    async def unread_total(self, viewer_id: str) -> int:
        return max(0, await self._message_repo.count_unread(viewer_id))
