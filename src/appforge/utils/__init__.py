"""AppForge utility modules."""

from appforge.utils.validation import (
    generate_app_name,
    is_allowed_fix_file,
    sanitize_generated_content,
    sanitize_log_message,
    sanitize_name,
    truncate_diagnostics,
    validate_port,
    validate_relative_path,
)

__all__ = [
    "generate_app_name",
    "is_allowed_fix_file",
    "sanitize_generated_content",
    "sanitize_log_message",
    "sanitize_name",
    "truncate_diagnostics",
    "validate_port",
    "validate_relative_path",
]
