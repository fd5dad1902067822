"""File content access, fingerprinting and generated-file extraction."""

from .parser import (
    GeneratedFile,
    GeneratedOutput,
    WriteReport,
    parse_generated_output,
    strip_code_fences,
    write_generated_files,
)
from .store import UNKNOWN_HASH, ContentStore, FileDiff, diff_fingerprints, hash_content

__all__ = [
    "ContentStore",
    "FileDiff",
    "UNKNOWN_HASH",
    "diff_fingerprints",
    "hash_content",
    "GeneratedFile",
    "GeneratedOutput",
    "WriteReport",
    "parse_generated_output",
    "strip_code_fences",
    "write_generated_files",
]
