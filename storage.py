import logging
from typing import Optional
from urllib.parse import quote

from gridfs import GridFSBucket
from gridfs.errors import NoFile
from pymongo.errors import PyMongoError

from errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Public file bucket kept in GridFS. Paths are chosen by the caller."""

    def __init__(self, db, bucket_name: str, public_base_url: str, bucket: Optional[GridFSBucket] = None):
        self.bucket_name = bucket_name
        self.public_base_url = public_base_url.rstrip("/")
        self._db = db
        self._bucket = bucket

    @property
    def bucket(self) -> GridFSBucket:
        if self._bucket is None:
            if self._db is None:
                raise StorageError("Object storage is not configured")
            self._bucket = GridFSBucket(self._db, bucket_name=self.bucket_name)
        return self._bucket

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/storage/{self.bucket_name}/{quote(path, safe='/')}"

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None, upsert: bool = True) -> str:
        try:
            existing = list(self.bucket.find({"filename": path}))
            if existing and not upsert:
                raise StorageError(f"Object already exists: {path}")
            for f in existing:
                self.bucket.delete(f._id)
            self.bucket.upload_from_stream(path, data, metadata={"content_type": content_type})
        except PyMongoError as e:
            raise StorageError(f"Upload of '{path}' failed: {e}") from e
        logger.info("Stored object %s/%s (%d bytes)", self.bucket_name, path, len(data))
        return self.get_public_url(path)

    def download(self, path: str) -> bytes:
        try:
            return self.bucket.open_download_stream_by_name(path).read()
        except NoFile:
            raise StorageError(f"Object not found: {path}")
        except PyMongoError as e:
            raise StorageError(f"Download of '{path}' failed: {e}") from e
