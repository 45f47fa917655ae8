# SPDX-License-Identifier: GPL-3.0-or-later
import json
import logging
import threading
from typing import Callable, Dict, List, Optional

from fbcgen.exceptions import FbcgenError, ValidationError
from fbcgen.workers.tasks.fbc_utils import BundleMetadata
from fbcgen.workers.tasks.fbcgen_static_types import SkopeoInspectOutput
from fbcgen.workers.tasks.image_utils import parse_image_reference

log = logging.getLogger(__name__)

# Tags moved to each new build; the immutable tag of the same image is reported instead
FLOATING_TAGS = frozenset({'latest'})


def bundle_metadata_from_inspection(
    repository: str, tag: str, output: SkopeoInspectOutput
) -> BundleMetadata:
    """
    Build the metadata of a bundle tag from its inspection output.

    :param str repository: the bundle repository, e.g. ``quay.io/ns/bundle``
    :param str tag: the inspected tag
    :param dict output: the output of the registry inspection
    :return: the bundle metadata
    :rtype: BundleMetadata
    """
    labels = output.get('Labels') or {}
    digest = output.get('Digest') or ''
    return BundleMetadata(
        image=f'{repository}@{digest}' if digest else f'{repository}:{tag}',
        digest=digest,
        tag=tag,
        version=labels.get('version', ''),
        build_date=labels.get('build-date') or output.get('Created') or '',
        git_commit=labels.get('vcs-ref') or labels.get('io.openshift.build.commit.id') or None,
        pr_title=labels.get('io.openshift.build.name') or None,
    )


def _deduplicate_by_digest(bundles: List[BundleMetadata]) -> List[BundleMetadata]:
    """
    Keep a single bundle per image digest.

    The first tag of an image is kept unless it is a floating tag and the image has another one.
    Bundles without a digest are kept as they are.

    :param list bundles: the bundles in tag listing order
    :return: the bundles with distinct digests
    :rtype: list
    """
    by_digest: Dict[str, int] = {}
    unique: List[BundleMetadata] = []
    for bundle in bundles:
        if not bundle.digest:
            unique.append(bundle)
            continue
        index = by_digest.get(bundle.digest)
        if index is None:
            by_digest[bundle.digest] = len(unique)
            unique.append(bundle)
            continue
        log.debug('The tags %s and %s point to %s', unique[index].tag, bundle.tag, bundle.digest)
        if unique[index].tag in FLOATING_TAGS and bundle.tag not in FLOATING_TAGS:
            unique[index] = bundle
    return unique


def list_latest_bundles(
    repository: str,
    limit: int,
    list_tags: Optional[Callable[..., List[str]]] = None,
    inspect: Optional[Callable[..., SkopeoInspectOutput]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[BundleMetadata]:
    """
    List the newest bundles of a bundle repository.

    Tags that cannot be inspected are skipped and an image tagged more than once is listed once.

    :param str repository: the bundle repository without tag or digest
    :param int limit: the maximum number of bundles to return
    :param callable list_tags: lists the tags of a repository, ``skopeo_list_tags`` by default
    :param callable inspect: the registry inspect capability, ``inspect_image`` by default
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the newest bundles, newest first
    :rtype: list
    :raises ValidationError: if ``limit`` is smaller than 1
    :raises ParseError: if the repository is malformed
    """
    if limit < 1:
        raise ValidationError('The number of bundles must be at least 1')

    if list_tags is None or inspect is None:
        from fbcgen.workers.tasks.utils import inspect_image, skopeo_list_tags

        list_tags = list_tags or skopeo_list_tags
        inspect = inspect or inspect_image

    repository_name = parse_image_reference(repository).name
    tags = list_tags(repository_name, cancel_event=cancel_event)
    log.info('Found %d tags in %s', len(tags), repository_name)

    bundles = []
    for tag in tags:
        try:
            output = inspect(f'{repository_name}:{tag}', cancel_event=cancel_event)
        except FbcgenError as e:
            log.warning('Skipping the tag %s of %s: %s', tag, repository_name, e)
            continue
        bundles.append(bundle_metadata_from_inspection(repository_name, tag, output))

    bundles = _deduplicate_by_digest(bundles)
    bundles.sort(key=lambda bundle: bundle.build_date, reverse=True)
    return bundles[:limit]


def format_bundles(bundles: List[BundleMetadata], output_format: str = 'text') -> str:
    """
    Render a bundle listing for display.

    :param list bundles: the bundles, newest first
    :param str output_format: ``text`` or ``json``
    :return: the rendered listing
    :rtype: str
    :raises ValidationError: if the output format is unknown
    """
    if output_format == 'json':
        return json.dumps(
            {
                'count': len(bundles),
                'bundles': [bundle.model_dump(mode='json', by_alias=True) for bundle in bundles],
            },
            indent=2,
        )
    if output_format != 'text':
        raise ValidationError(f'Unknown output format "{output_format}", use "text" or "json"')

    if len(bundles) == 1:
        return f'{bundles[0].image} {bundles[0].build_date}\n'

    lines = [f'Latest {len(bundles)} bundles (sorted by build date, newest first):', '']
    for bundle in bundles:
        lines.append(bundle.image)
        lines.append(f'  Tag: {bundle.tag}')
        lines.append(f'  Build Date: {bundle.build_date}')
        if bundle.version:
            lines.append(f'  Version: {bundle.version}')
        lines.append('')
    return '\n'.join(lines)
