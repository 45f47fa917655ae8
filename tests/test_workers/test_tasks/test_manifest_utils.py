# SPDX-License-Identifier: GPL-3.0-or-later
from unittest import mock

import pytest

from fbcgen.exceptions import AccessError, ParseError, ValidationError
from fbcgen.workers.config import get_worker_config
from fbcgen.workers.tasks import manifest_utils
from fbcgen.workers.tasks.manifest_utils import CatalogMetadata, ManifestConfig, ManifestGenerator

DIGEST = 'sha256:' + 'abc12345' * 8
CATALOG_IMAGE = f'quay.io/redhat-user-workloads/ocp-bpfman-tenant/catalog-ystream@{DIGEST}'


@pytest.fixture()
def manifest_config():
    return ManifestConfig(
        idms_mirrors={
            'registry.redhat.io/bpfman/bpfman-agent': [
                'quay.io/redhat-user-workloads/ocp-bpfman-tenant/ocp-bpfman-agent'
            ]
        }
    )


@pytest.fixture()
def catalog_meta():
    return CatalogMetadata(
        image=CATALOG_IMAGE,
        digest=DIGEST,
        short_digest='abc12345',
        catalog_type='catalog-ystream',
        version='4.19',
        default_channel='preview',
    )


def test_generate(manifest_config, catalog_meta):
    manifest_set = ManifestGenerator(manifest_config).generate(catalog_meta)

    labels = {
        'app.kubernetes.io/name': 'bpfman-operator',
        'app.kubernetes.io/created-by': 'fbcgen',
        'app.kubernetes.io/version': 'latest',
        'fbcgen': 'abc12345',
        'fbcgen/digest': 'abc12345',
    }
    assert manifest_set.namespace == {
        'apiVersion': 'v1',
        'kind': 'Namespace',
        'metadata': {
            'name': 'bpfman',
            'labels': {'openshift.io/cluster-monitoring': 'true', **labels},
        },
    }
    assert manifest_set.image_digest_mirror_set == {
        'apiVersion': 'config.openshift.io/v1',
        'kind': 'ImageDigestMirrorSet',
        'metadata': {'name': 'bpfman-idms-sha-abc12345', 'labels': labels},
        'spec': {
            'imageDigestMirrors': [
                {
                    'source': 'registry.redhat.io/bpfman/bpfman-agent',
                    'mirrors': ['quay.io/redhat-user-workloads/ocp-bpfman-tenant/ocp-bpfman-agent'],
                }
            ]
        },
    }
    assert manifest_set.catalog_source == {
        'apiVersion': 'operators.coreos.com/v1alpha1',
        'kind': 'CatalogSource',
        'metadata': {
            'name': 'bpfman-catalogsource-sha-abc12345',
            'namespace': 'openshift-marketplace',
            'labels': labels,
        },
        'spec': {
            'sourceType': 'grpc',
            'image': CATALOG_IMAGE,
            'displayName': 'Bpfman Y-stream v4.19-abc12345',
            'publisher': 'Red Hat',
        },
    }
    assert manifest_set.operator_group == {
        'apiVersion': 'operators.coreos.com/v1',
        'kind': 'OperatorGroup',
        'metadata': {
            'name': 'bpfman-operatorgroup-sha-abc12345',
            'namespace': 'bpfman',
            'labels': labels,
        },
        'spec': {},
    }
    assert manifest_set.subscription == {
        'apiVersion': 'operators.coreos.com/v1alpha1',
        'kind': 'Subscription',
        'metadata': {
            'name': 'bpfman-subscription-sha-abc12345',
            'namespace': 'bpfman',
            'labels': labels,
        },
        'spec': {
            'channel': 'preview',
            'name': 'bpfman-operator',
            'source': 'bpfman-catalogsource-sha-abc12345',
            'sourceNamespace': 'openshift-marketplace',
            'installPlanApproval': 'Automatic',
        },
    }


def test_generate_documents_order(manifest_config, catalog_meta):
    manifest_set = ManifestGenerator(manifest_config).generate(catalog_meta)

    assert [(filename, doc['kind']) for filename, doc in manifest_set.documents()] == [
        ('00-namespace.yaml', 'Namespace'),
        ('01-idms.yaml', 'ImageDigestMirrorSet'),
        ('02-catalogsource.yaml', 'CatalogSource'),
        ('03-operatorgroup.yaml', 'OperatorGroup'),
        ('04-subscription.yaml', 'Subscription'),
    ]


def test_generate_namespace_digest_suffix(catalog_meta):
    config = ManifestConfig(namespace='bpfman-test', namespace_digest_suffix=True)
    manifest_set = ManifestGenerator(config).generate(catalog_meta)

    assert manifest_set.namespace['metadata']['name'] == 'bpfman-test-abc12345'
    assert manifest_set.operator_group['metadata']['namespace'] == 'bpfman-test-abc12345'
    assert manifest_set.subscription['metadata']['namespace'] == 'bpfman-test-abc12345'


def test_generate_without_digest(manifest_config):
    catalog_meta = CatalogMetadata(image='quay.io/ns/catalog:latest', default_channel='stable')
    manifest_set = ManifestGenerator(manifest_config).generate(catalog_meta)

    assert manifest_set.catalog_source['metadata']['name'] == 'bpfman-catalogsource'
    assert manifest_set.catalog_source['spec']['displayName'] == 'Bpfman Catalog'
    assert 'fbcgen/digest' not in manifest_set.subscription['metadata']['labels']
    assert manifest_set.subscription['spec']['channel'] == 'stable'


def test_generate_no_default_channel(manifest_config):
    catalog_meta = CatalogMetadata(image=CATALOG_IMAGE, short_digest='abc12345')

    with pytest.raises(ValidationError, match='No default channel was found'):
        ManifestGenerator(manifest_config).generate(catalog_meta)


def test_generate_is_deterministic(manifest_config, catalog_meta):
    generator = ManifestGenerator(manifest_config)
    assert generator.generate(catalog_meta) == generator.generate(catalog_meta)


@pytest.mark.parametrize(
    'catalog_type, expected',
    (
        ('catalog-ystream', 'Y-stream'),
        ('catalog-zstream', 'Z-stream'),
        ('catalog-ocp4', 'ocp4'),
        ('', 'Catalog'),
        ('custom', 'custom'),
    ),
)
def test_format_catalog_type(catalog_type, expected):
    assert manifest_utils.format_catalog_type(catalog_type) == expected


@pytest.mark.parametrize(
    'version, short_digest, expected',
    (
        ('4.19', 'abc12345', 'Bpfman Y-stream v4.19-abc12345'),
        ('4.19', '', 'Bpfman Y-stream v4.19'),
        ('', 'abc12345', 'Bpfman Y-stream-abc12345'),
        ('', '', 'Bpfman Y-stream'),
    ),
)
def test_generate_display_name(version, short_digest, expected):
    catalog_meta = CatalogMetadata(
        image=CATALOG_IMAGE,
        catalog_type='catalog-ystream',
        version=version,
        short_digest=short_digest,
    )
    assert manifest_utils.generate_display_name('Bpfman', catalog_meta) == expected


def test_manifest_config_from_config():
    config = ManifestConfig.from_config(get_worker_config(), namespace='custom')

    assert config.namespace == 'custom'
    assert config.operator_package == 'bpfman-operator'
    assert config.catalog_source_namespace == 'openshift-marketplace'
    assert 'registry.redhat.io/bpfman/bpfman' in config.idms_mirrors


def test_extract_catalog_metadata():
    inspect = mock.Mock(return_value={'Digest': DIGEST})
    render = mock.Mock(
        return_value=[
            {'schema': 'olm.package', 'name': 'bpfman-operator', 'defaultChannel': 'preview'}
        ]
    )

    catalog_meta = manifest_utils.extract_catalog_metadata(
        'quay.io/redhat-user-workloads/ocp-bpfman-tenant/catalog-ystream:v4.19',
        package='bpfman-operator',
        inspect=inspect,
        render=render,
    )

    assert catalog_meta == CatalogMetadata(
        image=CATALOG_IMAGE,
        digest=DIGEST,
        short_digest='abc12345',
        catalog_type='catalog-ystream',
        version='4.19',
        default_channel='preview',
    )
    # The catalog is rendered by digest so the manifests match what was inspected
    render.assert_called_once_with([CATALOG_IMAGE], bundle_only=False, cancel_event=None)


def test_extract_catalog_metadata_pinned():
    inspect = mock.Mock()
    render = mock.Mock(
        return_value=[{'schema': 'olm.package', 'name': 'op', 'defaultChannel': 'alpha'}]
    )

    catalog_meta = manifest_utils.extract_catalog_metadata(
        CATALOG_IMAGE, package='op', inspect=inspect, render=render
    )

    assert catalog_meta.default_channel == 'alpha'
    assert catalog_meta.version == ''
    inspect.assert_not_called()


def test_extract_catalog_metadata_invalid_reference():
    with pytest.raises(ParseError):
        manifest_utils.extract_catalog_metadata('catalog', inspect=mock.Mock(), render=mock.Mock())


def test_extract_catalog_metadata_not_accessible():
    inspect = mock.Mock(side_effect=AccessError('unauthorized'))
    render = mock.Mock()

    with pytest.raises(AccessError, match='unauthorized'):
        manifest_utils.extract_catalog_metadata(
            'quay.io/ns/catalog:v1', inspect=inspect, render=render
        )
    render.assert_not_called()


def test_catalog_metadata_json_aliases(catalog_meta):
    assert catalog_meta.model_dump(by_alias=True) == {
        'image': CATALOG_IMAGE,
        'digest': DIGEST,
        'shortDigest': 'abc12345',
        'catalogType': 'catalog-ystream',
        'version': '4.19',
        'defaultChannel': 'preview',
    }
