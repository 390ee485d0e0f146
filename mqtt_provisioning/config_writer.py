"""Persist broker artifacts atomically with owner-only permissions."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from .errors import ArtifactWriteError


logger = logging.getLogger(__name__)

ARTIFACT_FILE_MODE = 0o600


def write_artifact(path: Union[str, os.PathLike[str]], content: str) -> Path:
    """Write ``content`` to ``path`` so readers never observe a partial file.

    The data is written to a temporary file in the target directory, synced
    and then renamed over ``path``. Any filesystem failure is raised as
    :class:`ArtifactWriteError` and the temporary file is discarded.
    """

    target = Path(path)
    tmp_name = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, ARTIFACT_FILE_MODE)
        os.replace(tmp_name, target)
        tmp_name = None
    except OSError as exc:
        reason = exc.strerror or str(exc)
        logger.error("Failed to write %s: %s", target, reason)
        raise ArtifactWriteError(target, reason) from exc
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                logger.debug("Could not remove temporary file %s", tmp_name)

    logger.info("Wrote %s (%d bytes)", target, len(content.encode("utf-8")))
    return target


__all__ = ["ARTIFACT_FILE_MODE", "write_artifact"]
