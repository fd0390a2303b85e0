"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing labels and file names for safe filesystem and object-key usage
- Ensuring directory creation
- Deriving the merged DOCX file name from a PDF output name
- Generating correlation identifiers
"""

from __future__ import annotations

import re
import uuid
from pathlib import Path

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "default-doc")
        'my-document'
        >>> sanitize_label("@#$", "default-doc")
        'default-doc'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def sanitize_filename(filename: str, fallback: str = "document") -> str:
    """
    Make a file name safe for use as the last segment of a path or object key.

    Unlike ``sanitize_label`` the case and extension are preserved.

    Example:
        >>> sanitize_filename("Q3 Report (final).pdf")
        'Q3-Report-final-.pdf'
    """
    name = Path(filename.replace("\\", "/")).name
    cleaned = SANITIZE_PATTERN.sub("-", name.strip()).strip("-_")
    if not cleaned or cleaned.strip(".") == "":
        return fallback
    return cleaned


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def merged_docx_name(output_file_name: str) -> str:
    """
    Name for the merged DOCX stored alongside a PDF output.

    Example:
        >>> merged_docx_name("invoice.pdf")
        'invoice.docx'
        >>> merged_docx_name("invoice")
        'invoice.docx'
    """
    if output_file_name.lower().endswith(".pdf"):
        return output_file_name[:-4] + ".docx"
    return output_file_name + ".docx"


def new_correlation_id() -> str:
    return str(uuid.uuid4())
