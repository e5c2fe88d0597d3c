"""Common annotated types for field validation.

These types provide consistent validation patterns across the package.
"""

from typing import Annotated

from pydantic import Field

# Pattern for content hashes and session ids
# Alphanumeric, underscore, hyphen - must be non-empty, never a path separator
IDENTIFIER_PATTERN = r"^[a-zA-Z0-9_-]+$"

# Pattern for original file names (single path segment)
FILENAME_PATTERN = r"^[^/\\]+$"

# Pattern for folder paths (relative, no leading slash)
FOLDER_PATTERN = r"^[a-zA-Z0-9_][a-zA-Z0-9_./-]*$"


# Content hash - hex digest supplied by the client (MD5, SHA-256, ...)
FileHash = Annotated[str, Field(min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN)]

# Session id - recommended to be the content hash
SessionId = Annotated[str, Field(min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN)]

# Original file name - kept as the last segment of the final object path
FileName = Annotated[str, Field(min_length=1, max_length=255, pattern=FILENAME_PATTERN)]

# Folder path - top-level prefix of the final object path
FolderPath = Annotated[str, Field(min_length=1, max_length=512, pattern=FOLDER_PATTERN)]

# Chunk number - 1-based
ChunkNumber = Annotated[int, Field(ge=1)]

# Total chunk count - fixed at session creation
ChunkCount = Annotated[int, Field(ge=1)]

# Byte size
ByteSize = Annotated[int, Field(ge=0)]
