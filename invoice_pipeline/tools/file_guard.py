import logging
import os
from typing import List, Optional

from invoice_pipeline.config import settings
from invoice_pipeline.models.processing import FileValidationResult, UploadedFile

logger = logging.getLogger(__name__)

DANGEROUS_EXTENSIONS = {".exe", ".bat", ".cmd", ".scr", ".pif", ".com"}

# Leading bytes each accepted format must start with
MAGIC_BYTES = {
    "application/pdf": b"%PDF",
    "image/png": b"\x89PNG",
    "image/jpeg": b"\xff\xd8\xff",
}


class FileGuard:
    """Rejects uploads that are too large, of the wrong type, or not what they claim to be."""

    def __init__(self, max_size: Optional[int] = None, allowed_mime_types: Optional[List[str]] = None):
        self.max_size = max_size or settings.MAX_FILE_SIZE_BYTES
        self.allowed_mime_types = allowed_mime_types or settings.ALLOWED_MIME_TYPES

    async def validate_file(self, file: UploadedFile) -> FileValidationResult:
        result = FileValidationResult()

        if file.size > self.max_size:
            result.errors.append(f"File size {file.size} exceeds maximum allowed size of {self.max_size} bytes")

        if file.content_type not in self.allowed_mime_types:
            result.errors.append(
                f"File type {file.content_type} is not allowed. Allowed types: {', '.join(self.allowed_mime_types)}"
            )

        if not file.filename or not file.filename.strip():
            result.errors.append("File name is required")
        else:
            extension = os.path.splitext(file.filename.lower())[1]
            if extension in DANGEROUS_EXTENSIONS:
                result.errors.append(f"File extension {extension} is not allowed for security reasons")

        result.errors.extend(self.validate_content(file.content, file.content_type))

        result.is_valid = not result.errors
        if not result.is_valid:
            logger.warning(f"File validation failed for {file.filename}: {result.errors}")
        return result

    @staticmethod
    def validate_content(content: bytes, content_type: str) -> List[str]:
        if not content:
            return ["File is empty"]
        expected = MAGIC_BYTES.get(content_type)
        if expected and not content.startswith(expected):
            return [f"Invalid {content_type} file format"]
        return []

    async def health_check(self) -> bool:
        return True
