"""
LevelDB storage for registry, curve and account records.
"""
import logging
from contextlib import contextmanager
from typing import Optional

import plyvel

logger = logging.getLogger(__name__)


class DB:
    """
    Thin plyvel handle shared by the curve store and the account store.

    Storage failures are logged with the key involved and re-raised.
    """

    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 4 * 1024 * 1024,
                 max_open_files: int = 1000):
        self.path = db_path
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
            )
        except plyvel.Error as e:
            logger.error(f"Failed to open curve database at {db_path}: {e}")
            raise
        self._closed = False
        logger.info(f"Curve database opened at {db_path}")

    @contextmanager
    def _access(self, action: str, key: bytes = b''):
        if self._closed:
            raise RuntimeError(f"Database at {self.path} is closed")
        try:
            yield self._db
        except plyvel.Error as e:
            logger.error(f"Storage {action} failed for key {key[:40]!r}: {e}")
            raise

    def get(self, key: bytes) -> Optional[bytes]:
        with self._access("read", key) as db:
            return db.get(key)

    def put(self, key: bytes, value: bytes):
        with self._access("write", key) as db:
            db.put(key, value)

    def delete(self, key: bytes):
        with self._access("delete", key) as db:
            db.delete(key)

    def exists(self, key: bytes) -> bool:
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        """
        All-or-nothing multi-key write.

        Nothing lands if the body raises:
            with db.write_batch() as batch:
                batch.put(curve_key, curve_bytes)
                batch.put(REGISTRY_KEY, registry_bytes)
        """
        with self._access("batch write") as db:
            batch = db.write_batch(transaction=True)
            try:
                yield batch
            except Exception:
                batch.clear()
                raise
            batch.write()

    def get_prefix(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        """(key, value) pairs whose key starts with prefix, in key order."""
        with self._access("prefix scan", prefix) as db:
            with db.iterator(prefix=prefix) as it:
                return list(it)

    def close(self):
        if self._closed:
            return
        self._db.close()
        self._closed = True
        logger.info(f"Curve database at {self.path} closed")

    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
