"""Validation utilities for otsql inputs."""
from __future__ import annotations
import os
import re

from otsql.utils.constants import SNIPPET_NAME_PATTERN

SNIPPET_NAME_RE = re.compile(SNIPPET_NAME_PATTERN)
VARIABLE_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class ValidationError(Exception):
    """Exception raised for validation failures."""
    pass


def validate_snippet_name(name: str) -> None:
    """Snippet names map to files; refuse anything that could escape the directory."""
    if not name or not SNIPPET_NAME_RE.match(name):
        raise ValidationError(f"Invalid snippet name: '{name}'")


def validate_variable_name(name: str) -> None:
    if not VARIABLE_NAME_RE.match(name):
        raise ValidationError(f"Invalid variable name: '{name}'")


def validate_input_file(filepath: str) -> None:
    """Validate that an input file exists and is readable."""
    if not os.path.exists(filepath):
        raise ValidationError(f"File not found: {filepath}")

    if not os.path.isfile(filepath):
        raise ValidationError(f"Path is not a file: {filepath}")

    if not os.access(filepath, os.R_OK):
        raise ValidationError(f"File not readable: {filepath}")


def validate_output_path(filepath: str, create_dirs: bool = False, overwrite: bool = True) -> None:
    """Validate that output path is writable."""
    if not filepath:
        return

    if not overwrite and os.path.exists(filepath):
        raise ValidationError(f"Output file already exists: {filepath}")

    directory = os.path.dirname(filepath)
    if directory and not os.path.exists(directory):
        if create_dirs:
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise ValidationError(f"Failed to create directory: {e}")
        else:
            raise ValidationError(f"Output directory does not exist: {directory}")

    if directory and not os.access(directory, os.W_OK):
        raise ValidationError(f"Output directory not writable: {directory}")
