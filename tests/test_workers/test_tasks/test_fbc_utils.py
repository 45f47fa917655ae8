# SPDX-License-Identifier: GPL-3.0-or-later
import re
from unittest import mock

import pytest

from fbcgen.exceptions import ParseError, ValidationError
from fbcgen.workers.tasks import fbc_utils
from fbcgen.workers.tasks.fbc_utils import BundleInfo, BundleMetadata

DIGEST = 'sha256:' + '0123456789abcdef' * 4
BUNDLE_IMAGE = f'quay.io/ns/bpfman-operator-bundle@{DIGEST}'


@pytest.mark.parametrize(
    'tag, expected', (('0123456789abcdef', '01234567'), ('abc', 'abc'), ('', ''))
)
def test_get_short_sha(tag, expected):
    assert fbc_utils.get_short_sha(tag) == expected


@pytest.mark.parametrize(
    'build_date, expected',
    (
        ('2025-10-02T12:05:37Z', '2025-10-02T1205'),
        ('2025-10-02T12:05', '2025-10-02T1205'),
        ('2025-10-02 12:05:37 +0000 UTC', '2025-10-02T1205'),
        ('2025-01-01', '2025-01-01T0000'),
        ('2025-01', ''),
        ('', ''),
    ),
)
def test_format_build_timestamp(build_date, expected):
    assert fbc_utils.format_build_timestamp(build_date) == expected


def test_generate_catalog_entry_name():
    bundle = BundleMetadata(
        image=BUNDLE_IMAGE,
        tag='0123456789abcdef',
        version='0.5.6',
        build_date='2025-10-02T12:05:37Z',
    )
    assert fbc_utils.generate_catalog_entry_name('bpfman-operator', bundle) == (
        'bpfman-operator.v0.5.6-g01234567-2025-10-02T1205'
    )


def test_build_single_template():
    template = fbc_utils.build_single_template(
        BUNDLE_IMAGE, BundleInfo(name='bpfman-operator.v0.5.6', package='bpfman-operator')
    )

    assert template == {
        'schema': 'olm.template.basic',
        'entries': [
            {'schema': 'olm.package', 'name': 'bpfman-operator', 'defaultChannel': 'preview'},
            {
                'schema': 'olm.channel',
                'package': 'bpfman-operator',
                'name': 'preview',
                'entries': [{'name': 'bpfman-operator.v0.5.6'}],
            },
            {'schema': 'olm.bundle', 'image': BUNDLE_IMAGE, 'name': 'bpfman-operator.v0.5.6'},
        ],
    }


def test_build_single_template_channel():
    template = fbc_utils.build_single_template(
        BUNDLE_IMAGE, BundleInfo(name='op.v1', package='op'), channel='stable'
    )
    assert template['entries'][0]['defaultChannel'] == 'stable'
    assert template['entries'][1]['name'] == 'stable'
    assert 'replaces' not in template['entries'][1]['entries'][0]


def test_build_single_template_empty_image():
    with pytest.raises(ValidationError, match='cannot be empty'):
        fbc_utils.build_single_template('', BundleInfo(name='op.v1', package='op'))


def test_build_chain_template_two_bundles():
    bundle_b = BundleMetadata(
        image='quay.io/ns/demo-bundle:b', tag='bbbbbbbb', version='1.1', build_date='2025-02-01'
    )
    bundle_a = BundleMetadata(
        image='quay.io/ns/demo-bundle:a', tag='aaaaaaaa', version='1.0', build_date='2025-01-01'
    )

    template = fbc_utils.build_chain_template([bundle_b, bundle_a], 'demo-operator')

    channel = template['entries'][1]
    assert channel['name'] == 'preview'
    assert channel['entries'] == [
        {'name': 'demo-operator.v1.0-gaaaaaaaa-2025-01-01T0000'},
        {
            'name': 'demo-operator.v1.1-gbbbbbbbb-2025-02-01T0000',
            'replaces': 'demo-operator.v1.0-gaaaaaaaa-2025-01-01T0000',
        },
    ]
    assert fbc_utils.get_template_bundle_images(template) == [
        'quay.io/ns/demo-bundle:a',
        'quay.io/ns/demo-bundle:b',
    ]


def test_build_chain_template(chain_bundles):
    template = fbc_utils.build_chain_template(chain_bundles, 'bpfman-operator', channel='stable')

    assert template['entries'][0] == {
        'schema': 'olm.package',
        'name': 'bpfman-operator',
        'defaultChannel': 'stable',
    }
    entries = template['entries'][1]['entries']
    names = [entry['name'] for entry in entries]
    assert names == [
        'bpfman-operator.v0.5.6-gaaaaaaaa-2025-10-01T0815',
        'bpfman-operator.v0.5.7-gbbbbbbbb-2025-10-02T1205',
        'bpfman-operator.v0.5.8-gcccccccc-2025-10-03T0900',
    ]
    # A single linear chain
    assert 'replaces' not in entries[0]
    assert [entry['replaces'] for entry in entries[1:]] == names[:-1]

    bundle_entries = template['entries'][2:]
    assert [entry['name'] for entry in bundle_entries] == names
    assert [entry['image'] for entry in bundle_entries] == [
        chain_bundles[1].image,
        chain_bundles[2].image,
        chain_bundles[0].image,
    ]


def test_build_chain_template_is_deterministic(chain_bundles):
    assert fbc_utils.build_chain_template(chain_bundles, 'op') == fbc_utils.build_chain_template(
        list(reversed(chain_bundles)), 'op'
    )


def test_build_chain_template_single_bundle(chain_bundles):
    template = fbc_utils.build_chain_template(chain_bundles[:1], 'op')
    assert len(template['entries'][1]['entries']) == 1
    assert 'replaces' not in template['entries'][1]['entries'][0]


def test_build_chain_template_empty():
    with pytest.raises(ValidationError, match='No bundles were provided'):
        fbc_utils.build_chain_template([], 'op')


def test_sort_bundles_oldest_first_keeps_ties_in_order():
    first = BundleMetadata(image='quay.io/ns/b:1', build_date='2025-01-01T00:00:00Z')
    second = BundleMetadata(image='quay.io/ns/b:2', build_date='2025-01-01T00:00:00Z')
    older = BundleMetadata(image='quay.io/ns/b:0', build_date='2024-12-31T00:00:00Z')

    assert fbc_utils.sort_bundles_oldest_first([first, second, older]) == [older, first, second]


def test_template_to_yaml():
    template = fbc_utils.build_single_template(
        BUNDLE_IMAGE, BundleInfo(name='bpfman-operator.v0.5.6', package='bpfman-operator')
    )
    content = fbc_utils.template_to_yaml(template)

    assert content.startswith('schema: olm.template.basic\n')
    # Long references are never wrapped
    assert f'image: {BUNDLE_IMAGE}\n' in content
    assert fbc_utils.load_yaml_documents(content) == [template]


def test_template_to_yaml_wrong_schema():
    with pytest.raises(ValidationError, match='olm.template.basic'):
        fbc_utils.template_to_yaml({'schema': 'olm.semver', 'entries': []})


def test_dump_yaml_documents():
    content = fbc_utils.dump_yaml_documents([{'schema': 'olm.package'}, {'schema': 'olm.bundle'}])
    assert content == '---\nschema: olm.package\n---\nschema: olm.bundle\n'


def test_load_yaml_documents_skips_empty():
    assert fbc_utils.load_yaml_documents('---\na: 1\n---\n---\nb: 2\n') == [{'a': 1}, {'b': 2}]


@pytest.mark.parametrize('content', ('a: [1, 2\n', 'a: 1\na: 2\n'))
def test_load_yaml_documents_invalid(content):
    with pytest.raises(ParseError, match='not valid YAML'):
        fbc_utils.load_yaml_documents(content)


def test_generate_image_uuid_and_ttl():
    image_uuid, random_ttl = fbc_utils.generate_image_uuid_and_ttl()

    assert re.match(r'^[0-9a-f-]{36}-[0-9a-f-]{36}$', image_uuid)
    assert 15 <= int(random_ttl[:-1]) <= 30
    assert random_ttl.endswith('m')


def test_generate_catalog_dockerfile():
    dockerfile = fbc_utils.generate_catalog_dockerfile('registry.example.com/opm-base:v4.20')

    assert dockerfile.count('FROM registry.example.com/opm-base:v4.20') == 2
    assert 'COPY catalog.yaml /configs/catalog.yaml\n' in dockerfile
    assert 'LABEL operators.operatorframework.io.index.configs.v1=/configs\n' in dockerfile
    assert 'CMD ["serve", "/configs"]\n' in dockerfile


def test_generate_makefile():
    makefile = fbc_utils.generate_makefile(BUNDLE_IMAGE, 'uuid-1-uuid-2', '20m')

    assert f'# Bundle: {BUNDLE_IMAGE}\n' in makefile
    assert 'LOCAL_TAG ?= bpfman-catalog-sha-01234567\n' in makefile
    assert 'TTL_IMAGE ?= ttl.sh/uuid-1-uuid-2:20m\n' in makefile
    for target in ('build-image', 'push-image', 'prepare-deploy', 'deploy', 'undeploy', 'clean'):
        assert re.search(rf'^{target}:', makefile, re.MULTILINE)
    # Recipes must be indented with tabs
    assert '\n\t$(CONTAINER_TOOL) build -f Dockerfile -t $(LOCAL_TAG) .\n' in makefile
    assert '\n    $(' not in makefile


def test_generate_makefile_without_bundle():
    makefile = fbc_utils.generate_makefile('', 'uuid', '15m', base_name='demo')

    assert '# Bundle:' not in makefile
    assert 'LOCAL_TAG ?= demo-catalog\n' in makefile


@pytest.mark.parametrize(
    'bundle_count, expected', ((1, 'contains 1 bundle.'), (3, 'contains 3 bundles'), (0, None))
)
def test_generate_workflow(bundle_count, expected):
    workflow = fbc_utils.generate_workflow(bundle_count, True, '/tmp/artefacts', 'uuid', '20m')

    if expected:
        assert expected in workflow
    else:
        assert 'The catalog contains' not in workflow
    assert 'cd /tmp/artefacts' in workflow
    assert 'ttl.sh/uuid:20m' in workflow
    assert 'render-template' not in workflow


def test_generate_workflow_not_rendered():
    workflow = fbc_utils.generate_workflow(1, False, '/tmp/artefacts', 'uuid', '20m')

    assert 'could not be rendered automatically' in workflow
    assert fbc_utils.RENDER_TEMPLATE_COMMAND in workflow
    assert '3. Build and push' in workflow


@mock.patch('fbcgen.workers.tasks.fbc_utils.random.randint', return_value=22)
def test_generate_image_uuid_and_ttl_mocked(mock_randint):
    assert fbc_utils.generate_image_uuid_and_ttl()[1] == '22m'
    mock_randint.assert_called_once_with(15, 30)
