import base64
import binascii
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import structlog

from ..data.schemas import InputFileDescriptor, InputItem
from ..utils import file_extension

logger = structlog.get_logger(__name__)


def detect_input_files(
    items: Sequence[InputItem],
    materialize: bool = False,
    include_base64: bool = False,
    temp_dir: Optional[Union[str, Path]] = None,
    start_index: int = 0,
) -> Tuple[List[InputFileDescriptor], List[Path]]:
    """
    Builds one descriptor per binary attachment, walking items in order.

    When `materialize` is set, each attachment is decoded into a temporary
    file and its path recorded on the descriptor. The created paths are also
    returned so the caller can remove them with `cleanup_input_files`.
    Attachments whose payload is not valid base64 are skipped.

    `start_index` is the position of `items[0]` in the full item list, so
    descriptors keep the originating index when items run one at a time.
    """
    descriptors: List[InputFileDescriptor] = []
    created: List[Path] = []

    for item_index, item in enumerate(items, start=start_index):
        for binary_key, attachment in item.binary.items():
            try:
                content = base64.b64decode(attachment.data, validate=True)
            except (binascii.Error, ValueError) as e:
                logger.warning(
                    "input_files.decode_failed",
                    binary_key=binary_key,
                    item_index=item_index,
                    error=str(e),
                )
                continue

            extension = file_extension(attachment.file_name)
            temp_path: Optional[str] = None
            if materialize:
                with tempfile.NamedTemporaryFile(
                    delete=False,
                    suffix=f".{extension}" if extension else "",
                    prefix="pyrunner_input_",
                    dir=temp_dir,
                ) as tmp:
                    tmp.write(content)
                    temp_path = str(Path(tmp.name).resolve())
                created.append(Path(temp_path))

            descriptors.append(
                InputFileDescriptor(
                    filename=attachment.file_name,
                    mimetype=attachment.mime_type,
                    size=len(content),
                    extension=extension,
                    binary_key=binary_key,
                    item_index=item_index,
                    temp_path=temp_path,
                    base64_data=attachment.data if include_base64 else None,
                )
            )

    logger.debug(
        "input_files.detected", count=len(descriptors), materialized=len(created)
    )
    return descriptors, created


def cleanup_input_files(paths: Sequence[Path]) -> None:
    """Removes materialized input files. Failures are logged, never raised."""
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(
                "input_files.cleanup_failed", path=str(path), error=str(e)
            )
