"""
Qdrant archive for flushed meeting transcripts.

Keeps every flushed transcript with its summary status, so a meeting whose
summarization failed can be retried later.
"""

import logging
from typing import Optional

from qdrant_client import QdrantClient
from qdrant_client.http import models as qdrant_models

from .models import ArchivedMeeting, FlushPayload

logger = logging.getLogger(__name__)

# Constants
COLLECTION_NAME = "meeting_archive"
VECTOR_SIZE = 4  # Placeholder; the archive is looked up by id and payload only
DISTANCE = qdrant_models.Distance.DOT
SCROLL_LIMIT = 256

STATUS_PENDING = "pending"
STATUS_SUMMARIZED = "summarized"


class TranscriptArchive:
    """
    Persistent store of flushed meetings using Qdrant.

    Points carry the flush payload plus summary fields. Vectors are
    placeholders since meetings are never searched by similarity.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6333,
        collection_name: str = COLLECTION_NAME,
        location: Optional[str] = None,
    ):
        """
        Initialize the archive.

        Args:
            host: Qdrant server host
            port: Qdrant server port
            collection_name: Name of the collection to use
            location: Optional qdrant-client location (e.g. ":memory:");
                      overrides host/port
        """
        self.collection_name = collection_name

        if location is not None:
            self._client = QdrantClient(location=location)
            target = location
        else:
            self._client = QdrantClient(host=host, port=port)
            target = f"{host}:{port}"
        self._ensure_collection_exists()

        logger.info(f"TranscriptArchive initialized: {target}, collection={collection_name}")

    def _ensure_collection_exists(self):
        """Create the collection if it doesn't exist."""
        try:
            collections = self._client.get_collections().collections
            exists = any(c.name == self.collection_name for c in collections)

            if not exists:
                self._client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=qdrant_models.VectorParams(
                        size=VECTOR_SIZE,
                        distance=DISTANCE,
                    ),
                )
                logger.info(f"Created Qdrant collection: {self.collection_name}")
            else:
                logger.info(f"Using existing Qdrant collection: {self.collection_name}")

        except Exception as e:
            logger.error(f"Failed to ensure collection exists: {e}")
            raise ArchiveError(f"Collection setup failed: {e}") from e

    def save_meeting(self, payload: FlushPayload) -> str:
        """
        Store a flushed meeting as pending summarization.

        Returns:
            The meeting's archive id

        Raises:
            ArchiveError: If the write fails
        """
        meeting_id = payload.compute_id()
        point = qdrant_models.PointStruct(
            id=meeting_id,
            vector=[0.0] * VECTOR_SIZE,
            payload={**payload.to_dict(), "status": STATUS_PENDING, "summary": None, "style": None},
        )

        try:
            self._client.upsert(collection_name=self.collection_name, points=[point])
        except Exception as e:
            logger.error(f"Failed to archive meeting: {e}")
            raise ArchiveError(f"Failed to archive meeting: {e}") from e

        logger.info(f"Archived meeting {meeting_id} ({payload.meeting_title})")
        return meeting_id

    def mark_summarized(self, meeting_id: str, summary: str, style: str) -> bool:
        """
        Attach a summary to an archived meeting.

        Returns:
            True if successful, False otherwise
        """
        try:
            self._client.set_payload(
                collection_name=self.collection_name,
                payload={"status": STATUS_SUMMARIZED, "summary": summary, "style": style},
                points=[meeting_id],
            )
            return True
        except Exception as e:
            logger.error(f"Failed to store summary for {meeting_id}: {e}")
            return False

    def get_meeting(self, meeting_id: str) -> Optional[ArchivedMeeting]:
        try:
            records = self._client.retrieve(
                collection_name=self.collection_name,
                ids=[meeting_id],
                with_payload=True,
            )
        except Exception as e:
            logger.error(f"Failed to load meeting {meeting_id}: {e}")
            return None

        if not records:
            return None
        return ArchivedMeeting.from_dict(str(records[0].id), records[0].payload)

    def list_meetings(self, status: Optional[str] = None) -> list[ArchivedMeeting]:
        """
        List archived meetings, newest first.

        Args:
            status: Only return meetings with this status
        """
        scroll_filter = None
        if status is not None:
            scroll_filter = qdrant_models.Filter(
                must=[
                    qdrant_models.FieldCondition(
                        key="status",
                        match=qdrant_models.MatchValue(value=status),
                    )
                ]
            )

        meetings = []
        offset = None
        try:
            while True:
                records, offset = self._client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scroll_filter,
                    limit=SCROLL_LIMIT,
                    offset=offset,
                    with_payload=True,
                )
                meetings.extend(ArchivedMeeting.from_dict(str(r.id), r.payload) for r in records)
                if offset is None:
                    break
        except Exception as e:
            logger.error(f"Failed to list archived meetings: {e}")
            raise ArchiveError(f"Failed to list archived meetings: {e}") from e

        meetings.sort(key=lambda m: m.payload.timestamp, reverse=True)
        return meetings

    def list_pending(self) -> list[ArchivedMeeting]:
        """Meetings whose summarization has not succeeded yet."""
        return self.list_meetings(status=STATUS_PENDING)

    def get_last_meeting(self) -> Optional[ArchivedMeeting]:
        meetings = self.list_meetings()
        return meetings[0] if meetings else None

    def delete_meeting(self, meeting_id: str) -> bool:
        try:
            self._client.delete(
                collection_name=self.collection_name,
                points_selector=qdrant_models.PointIdsList(points=[meeting_id]),
            )
            logger.info(f"Deleted archived meeting: {meeting_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to delete meeting {meeting_id}: {e}")
            return False

    def close(self):
        """Close the Qdrant client connection."""
        self._client.close()
        logger.info("TranscriptArchive connection closed")


class ArchiveError(Exception):
    """Exception raised for transcript archive errors."""
    pass
