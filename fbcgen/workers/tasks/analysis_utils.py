# SPDX-License-Identifier: GPL-3.0-or-later
import enum
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from fbcgen.exceptions import AccessError, ExternalToolError, FbcgenError, ValidationError
from fbcgen.workers.config import get_worker_config
from fbcgen.workers.tasks.fbcgen_static_types import SkopeoInspectOutput
from fbcgen.workers.tasks.image_utils import (
    ImageReference,
    TenantWorkspace,
    parse_image_reference,
)
from fbcgen.workers.tasks.opm_operations import RenderFunc, opm_render

log = logging.getLogger(__name__)

InspectFunc = Callable[..., SkopeoInspectOutput]

TIER_PRIMARY = 'primary'
TIER_TENANT_WORKSPACE = 'tenant-workspace'


class RegistryClass(str, enum.Enum):
    """Where an image was found."""

    PRIMARY = 'Primary'
    TENANT_WORKSPACE = 'TenantWorkspace'
    NOT_ACCESSIBLE = 'NotAccessible'


class _AnalysisModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class ImageInfo(_AnalysisModel):
    """Build metadata of an image taken from its creation time and labels."""

    created: Optional[str] = None
    version: Optional[str] = None
    git_commit: Optional[str] = None
    git_url: Optional[str] = None
    pr_title: Optional[str] = None


class ImageInspectionResult(_AnalysisModel):
    """The reachability of a single image."""

    reference: str
    accessible: bool
    registry_class: RegistryClass
    error: Optional[str] = None
    info: Optional[ImageInfo] = None


class Summary(_AnalysisModel):
    """Counts of inspected images by reachability."""

    total_images: int = 0
    accessible_images: int = 0
    primary_images: int = 0
    tenant_images: int = 0
    inaccessible_images: int = 0


class BundleAnalysis(_AnalysisModel):
    """The images referenced by a bundle and where each of them can be pulled from."""

    bundle_ref: str
    bundle_info: Optional[ImageInfo] = None
    images: List[ImageInspectionResult] = []
    summary: Summary = Summary()


def _first_label(labels: Dict[str, str], *names: str) -> Optional[str]:
    for name in names:
        if labels.get(name):
            return labels[name]
    return None


def image_info_from_inspection(output: SkopeoInspectOutput) -> ImageInfo:
    """
    Get the build metadata of an image from its inspection output.

    :param dict output: the output of the registry inspection
    :return: the image build metadata
    :rtype: ImageInfo
    """
    labels = output.get('Labels') or {}
    return ImageInfo(
        created=output.get('Created') or None,
        version=labels.get('version') or None,
        git_commit=_first_label(labels, 'io.openshift.build.commit.id', 'vcs-ref'),
        git_url=_first_label(labels, 'io.openshift.build.source-location', 'vcs-url'),
        pr_title=labels.get('io.openshift.build.name') or None,
    )


def calculate_summary(results: List[ImageInspectionResult]) -> Summary:
    """
    Count the inspection results by registry class.

    :param list results: the inspection results
    :return: the summary of the results
    :rtype: Summary
    """
    accessible = [r for r in results if r.accessible]
    return Summary(
        total_images=len(results),
        accessible_images=len(accessible),
        primary_images=sum(1 for r in accessible if r.registry_class == RegistryClass.PRIMARY),
        tenant_images=sum(
            1 for r in accessible if r.registry_class == RegistryClass.TENANT_WORKSPACE
        ),
        inaccessible_images=len(results) - len(accessible),
    )


def filter_accessible(analysis: BundleAnalysis) -> BundleAnalysis:
    """
    Drop the inaccessible images from an analysis and recount the summary.

    :param BundleAnalysis analysis: the complete analysis
    :return: the analysis of the accessible images only
    :rtype: BundleAnalysis
    """
    images = [image for image in analysis.images if image.accessible]
    return analysis.model_copy(update={'images': images, 'summary': calculate_summary(images)})


def deduplicate(references: List[str]) -> List[str]:
    """Remove duplicate references keeping the first occurrence of each."""
    return list(dict.fromkeys(references))


def extract_image_references(blobs: List[Dict[str, Any]]) -> List[str]:
    """
    Collect the image of each rendered bundle and its related images.

    :param list blobs: the rendered declarative config blobs
    :return: the unique image references in first seen order
    :rtype: list
    """
    references = []
    for blob in blobs:
        if blob.get('schema') != 'olm.bundle':
            continue
        if blob.get('image'):
            references.append(blob['image'])
        for related_image in blob.get('relatedImages') or []:
            if related_image.get('image'):
                references.append(related_image['image'])
    return deduplicate(references)


class BundleContentAnalyzer:
    """Finds the images a bundle references and checks where each of them can be pulled from."""

    def __init__(
        self,
        inspect: Optional[InspectFunc] = None,
        render: Optional[RenderFunc] = None,
        tenant_workspace: Optional[TenantWorkspace] = None,
    ):
        """
        Initialize the BundleContentAnalyzer.

        :param callable inspect: the registry inspect capability, ``inspect_image`` by default
        :param callable render: the render capability, ``opm_render`` by default
        :param TenantWorkspace tenant_workspace: the fallback location of images; taken from the
            worker configuration by default
        """
        if inspect is None:
            from fbcgen.workers.tasks.utils import inspect_image

            inspect = inspect_image
        self.inspect = inspect
        self.render = render or opm_render
        self.tenant_workspace = tenant_workspace or TenantWorkspace.from_config(
            get_worker_config()
        )

    def _inspect_tier(
        self, image_ref: ImageReference, tier: str, cancel_event: Optional[threading.Event]
    ) -> SkopeoInspectOutput:
        try:
            return self.inspect(str(image_ref), cancel_event=cancel_event)
        except AccessError as e:
            raise AccessError(str(e), reference=str(image_ref), tier=tier) from e

    def _inspect_with_fallback(
        self, image_ref: ImageReference, cancel_event: Optional[threading.Event]
    ) -> Tuple[ImageReference, SkopeoInspectOutput, RegistryClass]:
        """
        Inspect the image in its own registry, then in the tenant workspace.

        :return: the reference that was accessible, its inspection output and registry class
        :raises AccessError: if the image is accessible in neither location
        """
        try:
            output = self._inspect_tier(image_ref, TIER_PRIMARY, cancel_event)
            if self.tenant_workspace.contains(image_ref):
                return image_ref, output, RegistryClass.TENANT_WORKSPACE
            return image_ref, output, RegistryClass.PRIMARY
        except AccessError as primary_error:
            log.debug('%s is not accessible: %s', image_ref, primary_error)
            if self.tenant_workspace.contains(image_ref):
                raise AccessError(
                    f'{image_ref} is not accessible and is already in the tenant workspace',
                    reference=str(image_ref),
                    tier=TIER_PRIMARY,
                ) from primary_error
            tenant_ref = self.tenant_workspace.convert(image_ref)

        try:
            output = self._inspect_tier(tenant_ref, TIER_TENANT_WORKSPACE, cancel_event)
        except AccessError as tenant_error:
            raise AccessError(
                f'{image_ref} is not accessible in any registry; '
                f'tried {image_ref} and {tenant_ref}',
                reference=str(tenant_ref),
                tier=TIER_TENANT_WORKSPACE,
            ) from tenant_error
        return tenant_ref, output, RegistryClass.TENANT_WORKSPACE

    def classify_image(
        self, reference: str, cancel_event: Optional[threading.Event] = None
    ) -> ImageInspectionResult:
        """
        Check where an image can be pulled from.

        Failures are reported in the result instead of being raised.

        :param str reference: the image reference
        :param threading.Event cancel_event: the caller's cancellation event
        :return: the inspection result
        :rtype: ImageInspectionResult
        """
        try:
            image_ref = parse_image_reference(reference)
        except FbcgenError as e:
            return ImageInspectionResult(
                reference=reference,
                accessible=False,
                registry_class=RegistryClass.NOT_ACCESSIBLE,
                error=f'invalid image reference: {e}',
            )

        try:
            _, output, registry_class = self._inspect_with_fallback(image_ref, cancel_event)
        except FbcgenError as e:
            return ImageInspectionResult(
                reference=reference,
                accessible=False,
                registry_class=RegistryClass.NOT_ACCESSIBLE,
                error=str(e),
            )

        return ImageInspectionResult(
            reference=reference,
            accessible=True,
            registry_class=registry_class,
            info=image_info_from_inspection(output),
        )

    def analyze(
        self, bundle_ref: str, cancel_event: Optional[threading.Event] = None
    ) -> BundleAnalysis:
        """
        Analyze every image a bundle references.

        :param str bundle_ref: the bundle image reference
        :param threading.Event cancel_event: the caller's cancellation event
        :return: the analysis of all referenced images
        :rtype: BundleAnalysis
        :raises ParseError: if the bundle reference is malformed
        :raises AccessError: if the bundle is accessible in neither registry
        """
        image_ref = parse_image_reference(bundle_ref)
        log.info('Analyzing the bundle %s', image_ref)
        accessible_ref, output, _ = self._inspect_with_fallback(image_ref, cancel_event)

        try:
            blobs = self.render([str(accessible_ref)], bundle_only=True, cancel_event=cancel_event)
        except ExternalToolError as e:
            raise ExternalToolError(
                f'Failed to extract the image references of {accessible_ref}: {e}',
                stderr=e.stderr,
                returncode=e.returncode,
            ) from e
        except FbcgenError as e:
            raise FbcgenError(
                f'Failed to extract the image references of {accessible_ref}: {e}'
            ) from e

        references = extract_image_references(blobs)
        log.info('Inspecting %d images referenced by %s', len(references), accessible_ref)
        images = [self.classify_image(reference, cancel_event) for reference in references]
        return BundleAnalysis(
            bundle_ref=str(image_ref),
            bundle_info=image_info_from_inspection(output),
            images=images,
            summary=calculate_summary(images),
        )


def analyze_bundle(
    bundle_ref: str,
    show_all: bool = False,
    analyzer: Optional[BundleContentAnalyzer] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BundleAnalysis:
    """
    Analyze a bundle, keeping only the accessible images unless ``show_all`` is set.

    :param str bundle_ref: the bundle image reference
    :param bool show_all: include the inaccessible images
    :param BundleContentAnalyzer analyzer: the analyzer to use
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the analysis
    :rtype: BundleAnalysis
    """
    analyzer = analyzer or BundleContentAnalyzer()
    analysis = analyzer.analyze(bundle_ref, cancel_event=cancel_event)
    if show_all:
        return analysis
    return filter_accessible(analysis)


def _format_info(info: Optional[ImageInfo], indent: str) -> List[str]:
    if not info:
        return []
    lines = []
    for label, value in (
        ('Created', info.created),
        ('Version', info.version),
        ('Git commit', info.git_commit),
        ('Git URL', info.git_url),
        ('Build', info.pr_title),
    ):
        if value:
            lines.append(f'{indent}{label}: {value}')
    return lines


def format_analysis(analysis: BundleAnalysis, output_format: str = 'text') -> str:
    """
    Render an analysis for display.

    :param BundleAnalysis analysis: the analysis
    :param str output_format: ``text`` or ``json``
    :return: the rendered analysis
    :rtype: str
    :raises ValidationError: if the output format is unknown
    """
    if output_format == 'json':
        return json.dumps(analysis.model_dump(mode='json', by_alias=True), indent=2)
    if output_format != 'text':
        raise ValidationError(f'Unknown output format "{output_format}", use "text" or "json"')

    summary = analysis.summary
    lines = [f'Bundle: {analysis.bundle_ref}']
    lines.extend(_format_info(analysis.bundle_info, '  '))
    lines.extend(
        [
            '',
            'Summary:',
            f'  Total images: {summary.total_images}',
            f'  Accessible images: {summary.accessible_images}',
            f'    Primary registry: {summary.primary_images}',
            f'    Tenant workspace: {summary.tenant_images}',
            f'  Inaccessible images: {summary.inaccessible_images}',
            '',
            'Images:',
        ]
    )
    for image in analysis.images:
        lines.append(f'  [{image.registry_class.value}] {image.reference}')
        if image.error:
            lines.append(f'    Error: {image.error}')
        lines.extend(_format_info(image.info, '    '))
    return '\n'.join(lines) + '\n'
