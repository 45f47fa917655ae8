# SPDX-License-Identifier: GPL-3.0-or-later
from typing import Any, Dict, Optional
from typing_extensions import Annotated

from pydantic import AfterValidator, BaseModel

from fbcgen.common.pydantic_utils import (
    OUTPUT_FORMAT_LITERAL,
    image_format_check,
    length_validator,
    optional_name_check,
    output_dir_check,
    positive_count_check,
    repository_format_check,
)


class PydanticRequestBaseModel(BaseModel):
    """Base model representing an fbcgen request."""

    def get_task_kwargs(self) -> Dict[str, Any]:
        """Return the keyword arguments of the task handling the request."""
        return self.model_dump(exclude_none=True)


class BundleCatalogPydanticModel(PydanticRequestBaseModel):
    """Datastructure of a request to build a catalog from a bundle image."""

    bundle_image: Annotated[
        str,
        AfterValidator(length_validator),
        AfterValidator(image_format_check),
    ]
    output_dir: Annotated[str, AfterValidator(output_dir_check)]
    channel: Annotated[Optional[str], AfterValidator(optional_name_check)] = None
    opm_bin: Annotated[Optional[str], AfterValidator(optional_name_check)] = None


class BundleChainCatalogPydanticModel(PydanticRequestBaseModel):
    """Datastructure of a request to build a catalog from the newest bundles of a repository."""

    repository: Annotated[
        str,
        AfterValidator(length_validator),
        AfterValidator(repository_format_check),
    ]
    count: Annotated[int, AfterValidator(positive_count_check)]
    output_dir: Annotated[str, AfterValidator(output_dir_check)]
    channel: Annotated[Optional[str], AfterValidator(optional_name_check)] = None
    opm_bin: Annotated[Optional[str], AfterValidator(optional_name_check)] = None


class CatalogYamlPydanticModel(PydanticRequestBaseModel):
    """Datastructure of a request to build a catalog image from a catalog YAML file."""

    catalog_yaml: Annotated[str, AfterValidator(length_validator)]
    output_dir: Annotated[str, AfterValidator(output_dir_check)]


class CatalogDeploymentPydanticModel(PydanticRequestBaseModel):
    """Datastructure of a request to generate the manifests deploying a catalog image."""

    catalog_image: Annotated[
        str,
        AfterValidator(length_validator),
        AfterValidator(image_format_check),
    ]
    output_dir: Annotated[str, AfterValidator(output_dir_check)]
    namespace: Annotated[Optional[str], AfterValidator(optional_name_check)] = None


class BundleAnalysisPydanticModel(PydanticRequestBaseModel):
    """Datastructure of a request to analyze the images referenced by a bundle."""

    bundle_image: Annotated[
        str,
        AfterValidator(length_validator),
        AfterValidator(image_format_check),
    ]
    show_all: bool = False
    output_format: OUTPUT_FORMAT_LITERAL = 'text'
