# SPDX-License-Identifier: GPL-3.0-or-later
"""Generation of the Kubernetes and OLM objects that install an operator from a catalog image."""
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from fbcgen.exceptions import ValidationError
from fbcgen.workers.tasks.image_utils import (
    extract_version,
    infer_catalog_type,
    parse_image_reference,
    resolve_digest,
)
from fbcgen.workers.tasks.opm_operations import RenderFunc, get_default_channel

log = logging.getLogger(__name__)

CREATED_BY = 'fbcgen'

NAMESPACE_FILENAME = '00-namespace.yaml'
IDMS_FILENAME = '01-idms.yaml'
CATALOG_SOURCE_FILENAME = '02-catalogsource.yaml'
OPERATOR_GROUP_FILENAME = '03-operatorgroup.yaml'
SUBSCRIPTION_FILENAME = '04-subscription.yaml'


class CatalogMetadata(BaseModel):
    """What a catalog image is and what to subscribe to in it."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    image: str
    digest: str = ''
    short_digest: str = ''
    catalog_type: str = ''
    version: str = ''
    default_channel: str = ''


class ManifestConfig(BaseModel):
    """The naming and placement of the generated objects."""

    model_config = ConfigDict(frozen=True)

    resource_base_name: str = 'bpfman'
    namespace: str = 'bpfman'
    namespace_digest_suffix: bool = False
    catalog_source_namespace: str = 'openshift-marketplace'
    operator_package: str = 'bpfman-operator'
    display_name: str = 'Bpfman'
    publisher: str = 'Red Hat'
    idms_mirrors: Dict[str, List[str]] = {}

    @classmethod
    def from_config(cls, conf: Any, namespace: Optional[str] = None) -> 'ManifestConfig':
        """
        Build the manifest configuration from the worker configuration.

        :param conf: the worker configuration
        :param str namespace: overrides ``fbcgen_namespace`` when set
        :return: the manifest configuration
        :rtype: ManifestConfig
        """
        return cls(
            resource_base_name=conf['fbcgen_resource_base_name'],
            namespace=namespace or conf['fbcgen_namespace'],
            namespace_digest_suffix=conf['fbcgen_namespace_digest_suffix'],
            catalog_source_namespace=conf['fbcgen_catalog_source_namespace'],
            operator_package=conf['fbcgen_operator_package'],
            display_name=conf['fbcgen_catalog_display_name'],
            publisher=conf['fbcgen_catalog_publisher'],
            idms_mirrors=conf['fbcgen_idms_mirrors'],
        )


class ManifestSet(BaseModel):
    """The five objects that install the operator, in apply order."""

    model_config = ConfigDict(frozen=True)

    namespace: Dict[str, Any]
    image_digest_mirror_set: Dict[str, Any]
    catalog_source: Dict[str, Any]
    operator_group: Dict[str, Any]
    subscription: Dict[str, Any]

    def documents(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield the file name and content of each object in apply order."""
        yield NAMESPACE_FILENAME, self.namespace
        yield IDMS_FILENAME, self.image_digest_mirror_set
        yield CATALOG_SOURCE_FILENAME, self.catalog_source
        yield OPERATOR_GROUP_FILENAME, self.operator_group
        yield SUBSCRIPTION_FILENAME, self.subscription


def format_catalog_type(catalog_type: str) -> str:
    """
    Get the human readable form of a catalog type.

    :param str catalog_type: the catalog type, e.g. ``catalog-ystream``
    :return: the display form, e.g. ``Y-stream``
    :rtype: str
    """
    if catalog_type == 'catalog-ystream':
        return 'Y-stream'
    if catalog_type == 'catalog-zstream':
        return 'Z-stream'
    if not catalog_type:
        return 'Catalog'
    return catalog_type[len('catalog-') :] if catalog_type.startswith('catalog-') else catalog_type


def generate_display_name(prefix: str, catalog_meta: CatalogMetadata) -> str:
    """
    Generate the CatalogSource display name, e.g. ``Bpfman Y-stream v4.19-abc12345``.

    :param str prefix: the product name the display name starts with
    :param CatalogMetadata catalog_meta: the catalog metadata
    :return: the display name
    :rtype: str
    """
    name = f'{prefix} {format_catalog_type(catalog_meta.catalog_type)}'
    if catalog_meta.version:
        name = f'{name} v{catalog_meta.version}'
        if catalog_meta.short_digest:
            name = f'{name}-{catalog_meta.short_digest}'
    elif catalog_meta.short_digest:
        name = f'{name}-{catalog_meta.short_digest}'
    return name


class ManifestGenerator:
    """Generates the objects installing the operator from a catalog image."""

    def __init__(self, config: ManifestConfig):
        self.config = config

    def get_standard_labels(self, short_digest: str) -> Dict[str, str]:
        """
        Get the labels every generated object carries.

        :param str short_digest: the short digest of the catalog image, may be empty
        :return: the labels
        :rtype: dict
        """
        labels = {
            'app.kubernetes.io/name': self.config.operator_package,
            'app.kubernetes.io/created-by': CREATED_BY,
            'app.kubernetes.io/version': 'latest',
        }
        if short_digest:
            labels[CREATED_BY] = short_digest
            labels[f'{CREATED_BY}/digest'] = short_digest
        return labels

    @staticmethod
    def get_resource_name(base_name: str, short_digest: str) -> str:
        """
        Get the name of a digest keyed object.

        :param str base_name: the name without the digest suffix
        :param str short_digest: the short digest, may be empty
        :return: ``<base_name>-sha-<short_digest>``, or ``base_name`` when there is no digest
        :rtype: str
        """
        if short_digest:
            return f'{base_name}-sha-{short_digest}'
        return base_name

    def get_namespace_name(self, short_digest: str) -> str:
        """Get the name of the target namespace."""
        if self.config.namespace_digest_suffix and short_digest:
            return f'{self.config.namespace}-{short_digest}'
        return self.config.namespace

    @staticmethod
    def _metadata(
        name: str,
        standard_labels: Dict[str, str],
        labels: Optional[Dict[str, str]] = None,
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        merged = dict(labels or {})
        # The standard labels are applied last so object labels never replace them
        merged.update(standard_labels)
        metadata: Dict[str, Any] = {'name': name}
        if namespace:
            metadata['namespace'] = namespace
        metadata['labels'] = merged
        return metadata

    def generate(self, catalog_meta: CatalogMetadata) -> ManifestSet:
        """
        Generate the objects installing the operator from the catalog.

        :param CatalogMetadata catalog_meta: the catalog to install from
        :return: the generated objects
        :rtype: ManifestSet
        :raises ValidationError: if the catalog has no default channel
        """
        if not catalog_meta.default_channel:
            raise ValidationError(
                f'No default channel was found for {catalog_meta.image}; '
                'there is nothing to subscribe to'
            )

        short_digest = catalog_meta.short_digest
        standard_labels = self.get_standard_labels(short_digest)
        base_name = self.config.resource_base_name
        namespace_name = self.get_namespace_name(short_digest)
        catalog_source_name = self.get_resource_name(f'{base_name}-catalogsource', short_digest)

        namespace = {
            'apiVersion': 'v1',
            'kind': 'Namespace',
            'metadata': self._metadata(
                namespace_name,
                standard_labels,
                labels={'openshift.io/cluster-monitoring': 'true'},
            ),
        }
        idms = {
            'apiVersion': 'config.openshift.io/v1',
            'kind': 'ImageDigestMirrorSet',
            'metadata': self._metadata(
                self.get_resource_name(f'{base_name}-idms', short_digest), standard_labels
            ),
            'spec': {
                'imageDigestMirrors': [
                    {'source': source, 'mirrors': list(mirrors)}
                    for source, mirrors in self.config.idms_mirrors.items()
                ]
            },
        }
        catalog_source = {
            'apiVersion': 'operators.coreos.com/v1alpha1',
            'kind': 'CatalogSource',
            'metadata': self._metadata(
                catalog_source_name,
                standard_labels,
                namespace=self.config.catalog_source_namespace,
            ),
            'spec': {
                'sourceType': 'grpc',
                'image': catalog_meta.image,
                'displayName': generate_display_name(self.config.display_name, catalog_meta),
                'publisher': self.config.publisher,
            },
        }
        operator_group = {
            'apiVersion': 'operators.coreos.com/v1',
            'kind': 'OperatorGroup',
            'metadata': self._metadata(
                self.get_resource_name(f'{base_name}-operatorgroup', short_digest),
                standard_labels,
                namespace=namespace_name,
            ),
            'spec': {},
        }
        subscription = {
            'apiVersion': 'operators.coreos.com/v1alpha1',
            'kind': 'Subscription',
            'metadata': self._metadata(
                self.get_resource_name(f'{base_name}-subscription', short_digest),
                standard_labels,
                namespace=namespace_name,
            ),
            'spec': {
                'channel': catalog_meta.default_channel,
                'name': self.config.operator_package,
                'source': catalog_source_name,
                'sourceNamespace': self.config.catalog_source_namespace,
                'installPlanApproval': 'Automatic',
            },
        }

        log.debug(
            'Generated the manifests for %s in namespace %s', catalog_meta.image, namespace_name
        )
        return ManifestSet(
            namespace=namespace,
            image_digest_mirror_set=idms,
            catalog_source=catalog_source,
            operator_group=operator_group,
            subscription=subscription,
        )


def extract_catalog_metadata(
    catalog_image: str,
    package: Optional[str] = None,
    inspect: Optional[Callable[..., Any]] = None,
    render: Optional[RenderFunc] = None,
    cancel_event: Optional[threading.Event] = None,
) -> CatalogMetadata:
    """
    Collect the metadata of a catalog image needed to deploy from it.

    :param str catalog_image: the catalog image reference
    :param str package: the package whose default channel is used
    :param callable inspect: the registry inspect capability
    :param callable render: the render capability
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the catalog metadata
    :rtype: CatalogMetadata
    :raises ParseError: if the catalog image reference is malformed
    :raises AccessError: if the digest of the catalog image cannot be resolved
    :raises ValidationError: if the catalog has no default channel
    """
    image_ref = parse_image_reference(catalog_image)
    image_ref = resolve_digest(image_ref, inspect=inspect, cancel_event=cancel_event)
    log.info('Using the catalog image %s', image_ref.digest_ref)

    default_channel = get_default_channel(
        image_ref.digest_ref, package=package, render=render, cancel_event=cancel_event
    )
    return CatalogMetadata(
        image=image_ref.digest_ref,
        digest=image_ref.digest or '',
        short_digest=image_ref.short_digest,
        catalog_type=infer_catalog_type(image_ref.repository),
        version=extract_version(image_ref.repository, image_ref.tag),
        default_channel=default_channel,
    )
