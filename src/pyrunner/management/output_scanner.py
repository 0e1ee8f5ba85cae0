import base64
import os
from pathlib import Path
from typing import List, Optional, Union

import structlog

from ..data.schemas import OutputFileRecord
from ..utils import file_extension

logger = structlog.get_logger(__name__)

BINARY_KEY_PREFIX = "output_"
DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES = {
    # Text & data
    "txt": "text/plain",
    "log": "text/plain",
    "md": "text/markdown",
    "csv": "text/csv",
    "tsv": "text/tab-separated-values",
    "json": "application/json",
    "xml": "application/xml",
    "yaml": "application/x-yaml",
    "yml": "application/x-yaml",
    "html": "text/html",
    "htm": "text/html",
    "py": "text/x-python",
    "pdf": "application/pdf",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    # Images
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    # Audio
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    # Video
    "mp4": "video/mp4",
    "avi": "video/x-msvideo",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    # Archives
    "zip": "application/zip",
    "tar": "application/x-tar",
    "gz": "application/gzip",
    "7z": "application/x-7z-compressed",
    "rar": "application/vnd.rar",
}


def guess_mime_type(extension: str) -> str:
    return MIME_TYPES.get(extension.lower(), DEFAULT_MIME_TYPE)


def scan_output_dir(
    dir_path: Union[str, Path],
    max_file_size_bytes: int,
    max_files: Optional[int] = None,
) -> List[OutputFileRecord]:
    """
    Packages the files a script left in its scratch directory.

    Only regular files directly inside `dir_path` are considered; subdirectories
    and symlinks are ignored. Files larger than `max_file_size_bytes` are left
    out silently, and a file that cannot be read is logged and skipped. Records
    come back in directory-listing order, which is not sorted.

    Args:
        dir_path: The scratch directory to scan.
        max_file_size_bytes: Size ceiling per file.
        max_files: Optional cap on the number of records returned.

    Returns:
        One OutputFileRecord per surviving file.
    """
    log = logger.bind(dir_path=str(dir_path))
    try:
        entries = list(os.scandir(dir_path))
    except FileNotFoundError:
        log.warning("scanner.directory_missing")
        return []

    records: List[OutputFileRecord] = []
    for entry in entries:
        if max_files is not None and len(records) >= max_files:
            log.warning("scanner.max_files_reached", max_files=max_files)
            break

        try:
            if not entry.is_file(follow_symlinks=False):
                continue
            size = entry.stat(follow_symlinks=False).st_size
            if size > max_file_size_bytes:
                log.info(
                    "scanner.file_too_large",
                    filename=entry.name,
                    size=size,
                    max_file_size_bytes=max_file_size_bytes,
                )
                continue
            with open(entry.path, "rb") as f:
                content = f.read()
        except OSError as e:
            log.warning("scanner.file_skipped", filename=entry.name, error=str(e))
            continue

        extension = file_extension(entry.name)
        records.append(
            OutputFileRecord(
                filename=entry.name,
                extension=extension,
                size=len(content),
                mimetype=guess_mime_type(extension),
                base64_data=base64.b64encode(content).decode("ascii"),
                binary_key=f"{BINARY_KEY_PREFIX}{entry.name}",
            )
        )

    log.info("scanner.scan_complete", files=len(records))
    return records
