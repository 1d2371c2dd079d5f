# aggregator.py
import logging
import posixpath
import shutil
import zipfile

from errors import AggregationError, ArtifactMissingError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class Aggregator:
    """Streams per-item artifacts into one zip archive in the artifact store."""

    def __init__(self, store, compresslevel=9):
        self.store = store
        self.compresslevel = compresslevel

    def aggregate(self, artifact_refs, key):
        """Write every artifact into a zip stored at `key` and return its ref.

        Each artifact is copied in chunks, so only one is open at a time.
        """
        if not artifact_refs:
            raise AggregationError("nothing to aggregate")
        try:
            with self.store.writer(key) as fh:
                with zipfile.ZipFile(fh, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=self.compresslevel) as archive:
                    for index, ref in enumerate(artifact_refs):
                        with self.store.open(ref) as src, archive.open(self.entry_name(index, ref), "w") as dst:
                            shutil.copyfileobj(src, dst, CHUNK_SIZE)
        except ArtifactMissingError as e:
            raise AggregationError(f"aggregation_failed: {e}") from e
        except (OSError, zipfile.BadZipFile) as e:
            raise AggregationError(f"aggregation_failed: {e}") from e

        logger.info("Aggregated %d artifact(s) into %s", len(artifact_refs), key)
        return key

    @staticmethod
    def entry_name(index, ref):
        ext = posixpath.splitext(ref)[1] or ".bin"
        return f"item_{index + 1}{ext}"
