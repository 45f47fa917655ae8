# SPDX-License-Identifier: GPL-3.0-or-later
"""Parsing and normalization of container image references."""
import logging
import re
import threading
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from fbcgen.exceptions import FbcgenError, ParseError
from fbcgen.workers.tasks.fbcgen_static_types import SkopeoInspectOutput

log = logging.getLogger(__name__)

DEFAULT_REGISTRY = 'docker.io'
DIGEST_REGEX = re.compile(r'^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$')
SHA256_DIGEST_REGEX = re.compile(r'^sha256:([0-9a-f]{64})$')
TAG_REGEX = re.compile(r'^[\w][\w.-]{0,127}$')


def short_digest(digest: Optional[str]) -> str:
    """
    Get the first 8 hex characters of a ``sha256`` digest.

    Anything other than a complete ``sha256`` digest yields an empty string, which callers treat
    as "no digest suffix".

    :param str digest: the digest in the ``algorithm:hex`` format
    :return: the 8 character short digest or an empty string
    :rtype: str
    """
    if not digest:
        return ''
    match = SHA256_DIGEST_REGEX.match(digest)
    if not match:
        return ''
    return match.group(1)[:8]


def extract_digest_suffix(pull_spec: str) -> str:
    """
    Get the short digest of a digest pinned pull specification.

    :param str pull_spec: the pull specification, e.g. ``quay.io/ns/repo@sha256:...``
    :return: the 8 character short digest or an empty string
    :rtype: str
    """
    if '@' not in pull_spec:
        return ''
    return short_digest(pull_spec.split('@', 1)[1])


class ImageReference(BaseModel):
    """An immutable, parsed container image reference."""

    model_config = ConfigDict(frozen=True)

    registry: str
    namespace: str = ''
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def name(self) -> str:
        """Return the reference without tag and digest."""
        return '/'.join(part for part in (self.registry, self.namespace, self.repository) if part)

    @property
    def short_digest(self) -> str:
        """Return the first 8 hex characters of the digest, or an empty string."""
        return short_digest(self.digest)

    @property
    def digest_ref(self) -> str:
        """Return the digest pinned reference when the digest is known."""
        if self.digest:
            return f'{self.name}@{self.digest}'
        return str(self)

    def with_digest(self, digest: str) -> 'ImageReference':
        """
        Return a copy of the reference with the digest set.

        A digest that is already known is never replaced.

        :param str digest: the digest in the ``algorithm:hex`` format
        :return: the reference with a digest
        :rtype: ImageReference
        """
        if self.digest:
            return self
        if not DIGEST_REGEX.match(digest):
            raise ParseError(f'Invalid digest {digest!r} for {self}')
        return self.model_copy(update={'digest': digest})

    def __str__(self) -> str:
        ref = self.name
        if self.tag:
            ref = f'{ref}:{self.tag}'
        if self.digest:
            ref = f'{ref}@{self.digest}'
        return ref


def parse_image_reference(pull_spec: str) -> ImageReference:
    """
    Parse an image reference into its components.

    The digest suffix is split off first, then the tag after the last ``:``. The first path
    segment is the registry only when it contains a dot or a colon, or is ``localhost``;
    otherwise the registry defaults to ``docker.io``.

    :param str pull_spec: the image reference, optionally prefixed with ``docker://``
    :return: the parsed reference
    :rtype: ImageReference
    :raises ParseError: if the reference is malformed
    """
    if not pull_spec or not pull_spec.strip():
        raise ParseError('The image reference cannot be empty')

    ref = pull_spec.strip()
    if ref.startswith('docker://'):
        ref = ref[len('docker://') :]

    digest = None
    if '@' in ref:
        ref, digest = ref.split('@', 1)
        if not DIGEST_REGEX.match(digest):
            raise ParseError(f'Invalid digest in image reference: {pull_spec}')

    tag = None
    head, sep, tail = ref.rpartition(':')
    # A colon followed by a path separator belongs to a registry port, not a tag
    if sep and '/' not in tail:
        if not TAG_REGEX.match(tail):
            raise ParseError(f'Invalid tag in image reference: {pull_spec}')
        ref, tag = head, tail

    path_parts = ref.split('/')
    if len(path_parts) < 2 or any(not part for part in path_parts):
        raise ParseError(f'Invalid image reference format: {pull_spec}')

    first = path_parts[0]
    if '.' in first or ':' in first or first == 'localhost':
        registry = first
        path_parts = path_parts[1:]
    else:
        registry = DEFAULT_REGISTRY

    return ImageReference(
        registry=registry,
        namespace='/'.join(path_parts[:-1]),
        repository=path_parts[-1],
        tag=tag,
        digest=digest,
    )


def resolve_digest(
    image_ref: ImageReference,
    inspect: Optional[Callable[..., SkopeoInspectOutput]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ImageReference:
    """
    Resolve the digest of a reference that does not carry one.

    Retrying and falling back to other registries is left to the caller and the inspect
    capability.

    :param ImageReference image_ref: the reference to resolve
    :param callable inspect: the registry inspect capability; defaults to ``inspect_image``
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the reference with a digest
    :rtype: ImageReference
    :raises AccessError: if the image is not accessible
    """
    if image_ref.digest:
        return image_ref

    if inspect is None:
        from fbcgen.workers.tasks.utils import inspect_image

        inspect = inspect_image

    log.debug('Fetching the digest of %s', image_ref)
    output = inspect(str(image_ref), cancel_event=cancel_event)
    digest = output.get('Digest')
    if not digest:
        raise FbcgenError(f'The registry did not report a digest for {image_ref}')
    return image_ref.with_digest(digest)


class TenantWorkspace(BaseModel):
    """The alternate registry location used when an image is not in its primary registry."""

    model_config = ConfigDict(frozen=True)

    registry: str
    namespace: str
    repository_prefix: str = ''
    repository_overrides: Dict[str, str] = {}

    @classmethod
    def from_config(cls, conf: Any) -> 'TenantWorkspace':
        """
        Build the tenant workspace settings from the worker configuration.

        :param conf: the worker configuration
        :return: the tenant workspace settings
        :rtype: TenantWorkspace
        """
        return cls(
            registry=conf['fbcgen_tenant_workspace_registry'],
            namespace=conf['fbcgen_tenant_workspace_namespace'],
            repository_prefix=conf['fbcgen_tenant_workspace_repository_prefix'],
            repository_overrides=conf['fbcgen_tenant_workspace_repository_overrides'],
        )

    def contains(self, image_ref: ImageReference) -> bool:
        """Return True when the reference already points to the tenant workspace."""
        return image_ref.registry == self.registry and (
            image_ref.namespace == self.namespace
            or image_ref.namespace.startswith(f'{self.namespace}/')
        )

    def convert(self, image_ref: ImageReference) -> ImageReference:
        """
        Translate a reference to its tenant workspace location.

        The registry and namespace are replaced and the repository is renamed; the tag and
        digest are kept.

        :param ImageReference image_ref: the reference to translate
        :return: the tenant workspace reference
        :rtype: ImageReference
        :raises FbcgenError: if the reference already points to the tenant workspace
        """
        if self.contains(image_ref):
            raise FbcgenError(f'{image_ref} is already in the tenant workspace')

        repository = self.repository_overrides.get(image_ref.repository)
        if not repository:
            repository = image_ref.repository
            if not repository.startswith(self.repository_prefix):
                repository = f'{self.repository_prefix}{repository}'

        return image_ref.model_copy(
            update={
                'registry': self.registry,
                'namespace': self.namespace,
                'repository': repository,
            }
        )


def infer_catalog_type(repository: str) -> str:
    """
    Infer the catalog category from a repository name.

    :param str repository: the repository name, e.g. ``catalog-ystream``
    :return: the first two dash separated words when the name mentions a catalog, else ``''``
    :rtype: str
    """
    if 'catalog' not in repository:
        return ''
    parts = repository.split('-')
    if len(parts) < 2:
        return ''
    return '-'.join(parts[:2])


def extract_version(repository: str, tag: Optional[str]) -> str:
    """
    Best-effort extraction of a version from a tag or repository name.

    :param str repository: the repository name, e.g. ``catalog-ocp4-19``
    :param str tag: the tag, e.g. ``v4.19``
    :return: the version, e.g. ``4.19``, or an empty string
    :rtype: str
    """
    if tag:
        if tag.startswith('v'):
            return tag[1:]
        if len(tag.split('.')) >= 2:
            return tag

    if 'ocp4-' in repository:
        parts = repository.split('-')
        for i, part in enumerate(parts):
            if part.startswith('ocp4') and i + 1 < len(parts):
                return f'{part[len("ocp"):]}.{parts[i + 1]}'

    return ''
