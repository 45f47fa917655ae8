# SPDX-License-Identifier: GPL-3.0-or-later
from typing import Any, Dict, List, Union
from typing_extensions import NotRequired, TypedDict


class OlmProperty(TypedDict):
    """Type class referencing a property of an olm.bundle blob."""

    type: str
    value: Any


class RelatedImage(TypedDict):
    """Type class referencing a related image of an olm.bundle blob."""

    image: str
    name: NotRequired[str]


class OlmPackageBlob(TypedDict):
    """Type class referencing an olm.package blob as emitted by opm."""

    schema: str
    name: str
    defaultChannel: NotRequired[str]
    description: NotRequired[str]


class ChannelEntryItem(TypedDict):
    """Type class referencing an entry of an olm.channel blob."""

    name: str
    replaces: NotRequired[str]
    skips: NotRequired[List[str]]
    skipRange: NotRequired[str]


class OlmChannelBlob(TypedDict):
    """Type class referencing an olm.channel blob."""

    schema: str
    package: str
    name: str
    entries: List[ChannelEntryItem]


class OlmBundleBlob(TypedDict):
    """Type class referencing an olm.bundle blob as emitted by opm render."""

    schema: str
    name: str
    package: NotRequired[str]
    image: str
    properties: NotRequired[List[OlmProperty]]
    relatedImages: NotRequired[List[RelatedImage]]


class BundleTemplateEntry(TypedDict):
    """Type class referencing a bundle entry of an olm.template.basic template."""

    schema: str
    image: str
    name: NotRequired[str]


class PackageTemplateEntry(TypedDict):
    """Type class referencing a package entry of an olm.template.basic template."""

    schema: str
    name: str
    defaultChannel: str


TemplateEntry = Union[PackageTemplateEntry, OlmChannelBlob, BundleTemplateEntry]


class FBCTemplate(TypedDict):
    """Type class referencing an olm.template.basic document."""

    schema: str
    entries: List[TemplateEntry]


class SkopeoInspectOutput(TypedDict):
    """Type class referencing the subset of ``skopeo inspect`` output used by fbcgen."""

    Name: NotRequired[str]
    Digest: str
    Created: NotRequired[str]
    Labels: NotRequired[Dict[str, str]]
    RepoTags: NotRequired[List[str]]


class ArtifactSummary(TypedDict):
    """Type class referencing the files written by a catalog build request."""

    output_dir: str
    files: List[str]
    catalog_rendered: bool
    render_error: NotRequired[str]
