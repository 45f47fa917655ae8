# SPDX-License-Identifier: GPL-3.0-or-later
import os
from typing import Any, Literal, Optional

from fbcgen.exceptions import ValidationError

OUTPUT_FORMAT_LITERAL = Literal['text', 'json']


def image_format_check(image_name: str) -> str:
    """Check that the image has a registry path and a tag or a digest."""
    if '/' not in image_name:
        raise ValidationError(f'Image {image_name} should include a repository path.')
    last_segment = image_name.rsplit('/', 1)[-1]
    if '@' not in image_name and ':' not in last_segment:
        raise ValidationError(f'Image {image_name} should have a tag or a digest specified.')
    return image_name


def repository_format_check(repository: str) -> str:
    """Check that the repository has no tag or digest."""
    if '@' in repository or ':' in repository.rsplit('/', 1)[-1]:
        raise ValidationError(f'Repository {repository} should not have a tag or a digest.')
    if '/' not in repository:
        raise ValidationError(f'Repository {repository} should include a repository path.')
    return repository


def output_dir_check(output_dir: str) -> str:
    """Refuse to write the artifacts into the current working directory."""
    if not output_dir or os.path.normpath(output_dir) == '.':
        raise ValidationError(
            'The output directory cannot be the current working directory, '
            'please specify a named subdirectory'
        )
    return output_dir


def optional_name_check(name: Optional[str]) -> Optional[str]:
    """Reject a name that is set but blank."""
    if name is not None and not name.strip():
        raise ValidationError('The value must be a non-empty string when set')
    return name


def positive_count_check(count: int) -> int:
    """Check that at least one item is requested."""
    if count < 1:
        raise ValidationError(f'The count {count} should be at least 1.')
    return count


def length_validator(model_property: Any) -> Any:
    """Validate length of the given model property."""
    if len(model_property) == 0:
        raise ValidationError(f'The {type(model_property).__name__} value should not be empty.')
    return model_property
