# SPDX-License-Identifier: GPL-3.0-or-later
import io
import logging
import random
import textwrap
import uuid
from typing import Any, Iterable, List, Optional, Tuple

import ruamel.yaml
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from fbcgen.exceptions import ParseError, ValidationError
from fbcgen.workers.tasks.fbcgen_static_types import (
    BundleTemplateEntry,
    ChannelEntryItem,
    FBCTemplate,
    OlmChannelBlob,
    PackageTemplateEntry,
)
from fbcgen.workers.tasks.image_utils import extract_digest_suffix

log = logging.getLogger(__name__)

yaml = ruamel.yaml.YAML()
# ruamel introduces a line break if the yaml line is longer than yaml.width,
# which corrupts long related image references and annotations
yaml.width = 200
yaml.default_flow_style = False

BASIC_TEMPLATE_SCHEMA = 'olm.template.basic'
DEFAULT_CHANNEL = 'preview'
DEFAULT_BASE_NAME = 'bpfman'
# Lengths of "YYYY-MM-DD" and "YYYY-MM-DDTHH:MM"
DATE_LENGTH = 10
MIN_BUILD_DATE_LENGTH = 16
RENDER_TEMPLATE_COMMAND = (
    'opm alpha render-template basic --migrate-level=bundle-object-to-csv-metadata '
    '-o yaml fbc-template.yaml > catalog.yaml'
)


class BundleInfo(BaseModel):
    """The identity of a bundle as reported by rendering the bundle image."""

    model_config = ConfigDict(frozen=True)

    name: str
    package: str


class BundleMetadata(BaseModel):
    """Registry metadata of a bundle image used to build upgrade chains."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    image: str
    digest: str = ''
    tag: str = ''
    version: str = ''
    build_date: str = ''
    pr_title: Optional[str] = None
    git_commit: Optional[str] = None


def dump_yaml(data: Any) -> str:
    """
    Serialize a single object to a YAML document.

    :param data: the object to serialize
    :return: the YAML document
    :rtype: str
    """
    stream = io.StringIO()
    yaml.dump(data, stream)
    return stream.getvalue()


def dump_yaml_documents(documents: Iterable[Any]) -> str:
    """
    Serialize objects to a YAML stream with one ``---`` separated document per object.

    :param documents: the objects to serialize
    :return: the YAML stream
    :rtype: str
    """
    return ''.join(f'---\n{dump_yaml(document)}' for document in documents)


def load_yaml_documents(content: str) -> List[Any]:
    """
    Parse a YAML stream into a list of documents, skipping empty ones.

    :param str content: the YAML stream
    :return: the parsed documents
    :rtype: list
    :raises ParseError: if the content is not valid YAML
    """
    try:
        documents = list(yaml.load_all(content))
    except (ruamel.yaml.YAMLError, ruamel.yaml.constructor.DuplicateKeyError) as e:
        raise ParseError(f'The content is not valid YAML: {e}')
    return [document for document in documents if document is not None]


def get_short_sha(tag: str) -> str:
    """
    Get the abbreviated commit SHA of a bundle tag.

    Bundle tags are expected to start with the commit SHA the bundle was built from.

    :param str tag: the bundle tag, e.g. ``0123456789abcdef``
    :return: the first 8 characters of the tag
    :rtype: str
    """
    return tag[:8]


def format_build_timestamp(build_date: str) -> str:
    """
    Format a build date as ``YYYY-MM-DDTHHMM``.

    A build date without a time of day, e.g. ``2025-10-02``, becomes ``2025-10-02T0000`` so that
    catalog entry names keep the same form whatever the precision of the build date label.
    A value shorter than a complete date gives an empty string.

    :param str build_date: an ISO-8601 build date, e.g. ``2025-10-02T12:05:37Z``
    :return: the timestamp, or an empty string if the build date has no complete date
    :rtype: str
    """
    if not build_date or len(build_date) < DATE_LENGTH:
        return ''
    if len(build_date) < MIN_BUILD_DATE_LENGTH:
        return f'{build_date[:DATE_LENGTH]}T0000'
    return f'{build_date[:DATE_LENGTH]}T{build_date[11:16].replace(":", "")}'


def generate_catalog_entry_name(package: str, bundle: BundleMetadata) -> str:
    """
    Generate the deterministic catalog entry name of a bundle.

    The name has the ``<package>.v<version>-g<shortSHA>-<date>T<time>`` form.

    :param str package: the OLM package name
    :param BundleMetadata bundle: the registry metadata of the bundle
    :return: the catalog entry name
    :rtype: str
    """
    return (
        f'{package}.v{bundle.version}-g{get_short_sha(bundle.tag)}-'
        f'{format_build_timestamp(bundle.build_date)}'
    )


def _package_entry(package: str, channel: str) -> PackageTemplateEntry:
    return {'schema': 'olm.package', 'name': package, 'defaultChannel': channel}


def _channel_entry(package: str, channel: str, entries: List[ChannelEntryItem]) -> OlmChannelBlob:
    return {'schema': 'olm.channel', 'package': package, 'name': channel, 'entries': entries}


def _bundle_entry(image: str, name: str) -> BundleTemplateEntry:
    return {'schema': 'olm.bundle', 'image': image, 'name': name}


def build_single_template(
    bundle_image: str, bundle_info: BundleInfo, channel: Optional[str] = None
) -> FBCTemplate:
    """
    Build the basic template of a catalog containing a single bundle.

    :param str bundle_image: the bundle image reference
    :param BundleInfo bundle_info: the rendered identity of the bundle
    :param str channel: the channel to publish the bundle in, ``preview`` by default
    :return: the template
    :rtype: FBCTemplate
    :raises ValidationError: if the bundle image is empty
    """
    if not bundle_image:
        raise ValidationError('The bundle image cannot be empty')

    channel = channel or DEFAULT_CHANNEL
    return {
        'schema': BASIC_TEMPLATE_SCHEMA,
        'entries': [
            _package_entry(bundle_info.package, channel),
            _channel_entry(bundle_info.package, channel, [{'name': bundle_info.name}]),
            _bundle_entry(bundle_image, bundle_info.name),
        ],
    }


def sort_bundles_oldest_first(bundles: Iterable[BundleMetadata]) -> List[BundleMetadata]:
    """
    Order bundles by build date ascending, keeping the input order of ties.

    :param bundles: the bundles in any order
    :return: the bundles, oldest first
    :rtype: list
    """
    return sorted(bundles, key=lambda bundle: bundle.build_date)


def build_chain_template(
    bundles: List[BundleMetadata], package: str, channel: Optional[str] = None
) -> FBCTemplate:
    """
    Build the basic template of a catalog with a linear upgrade chain.

    Every channel entry but the oldest replaces its predecessor.

    :param list bundles: the bundles of the chain, usually newest first
    :param str package: the OLM package all bundles belong to
    :param str channel: the channel to publish the bundles in, ``preview`` by default
    :return: the template
    :rtype: FBCTemplate
    :raises ValidationError: if no bundles are provided
    """
    if not bundles:
        raise ValidationError('No bundles were provided')

    channel = channel or DEFAULT_CHANNEL
    ordered = sort_bundles_oldest_first(bundles)
    names = [generate_catalog_entry_name(package, bundle) for bundle in ordered]

    channel_entries: List[ChannelEntryItem] = []
    for i, name in enumerate(names):
        entry: ChannelEntryItem = {'name': name}
        if i > 0:
            entry['replaces'] = names[i - 1]
        channel_entries.append(entry)

    return {
        'schema': BASIC_TEMPLATE_SCHEMA,
        'entries': [
            _package_entry(package, channel),
            _channel_entry(package, channel, channel_entries),
            *(_bundle_entry(bundle.image, name) for bundle, name in zip(ordered, names)),
        ],
    }


def get_template_bundle_images(template: FBCTemplate) -> List[str]:
    """
    Get the images of the bundle entries of a template in template order.

    :param FBCTemplate template: the basic template
    :return: the bundle image references
    :rtype: list
    """
    return [
        entry['image']  # type: ignore
        for entry in template['entries']
        if entry['schema'] == 'olm.bundle' and entry.get('image')
    ]


def template_to_yaml(template: FBCTemplate) -> str:
    """
    Serialize a basic template to YAML.

    :param FBCTemplate template: the template
    :return: the YAML document
    :rtype: str
    :raises ValidationError: if the template is not a basic template
    """
    if template.get('schema') != BASIC_TEMPLATE_SCHEMA:
        raise ValidationError(f'Expected a template with the {BASIC_TEMPLATE_SCHEMA} schema')
    return dump_yaml(template)


def generate_image_uuid_and_ttl() -> Tuple[str, str]:
    """
    Generate a unique image name and expiry for pushing to ttl.sh.

    :return: a double UUID and a TTL between 15 and 30 minutes, e.g. ``"22m"``
    :rtype: tuple(str, str)
    """
    image_uuid = f'{uuid.uuid4()}-{uuid.uuid4()}'
    random_ttl = f'{random.randint(15, 30)}m'  # nosec
    return image_uuid, random_ttl


def generate_catalog_dockerfile(base_image: str) -> str:
    """
    Generate the Dockerfile that builds a catalog image from ``catalog.yaml``.

    :param str base_image: the operator registry image to build on
    :return: the Dockerfile content
    :rtype: str
    """
    return textwrap.dedent(
        f"""\
        # Catalog Dockerfile generated by fbcgen
        #
        # Build with:
        #   podman build -f Dockerfile -t my-catalog:dev .

        FROM {base_image} AS builder

        # Copy the rendered catalog
        COPY catalog.yaml /configs/catalog.yaml

        # Validate the catalog
        RUN ["/bin/opm", "validate", "/configs"]

        FROM {base_image}

        COPY --from=builder /configs /configs

        LABEL operators.operatorframework.io.index.configs.v1=/configs
        LABEL io.openshift.release.operator=true

        ENTRYPOINT ["/bin/opm"]
        CMD ["serve", "/configs"]
        """
    )


def generate_makefile(
    bundle_image: str,
    image_uuid: str,
    random_ttl: str,
    base_name: str = DEFAULT_BASE_NAME,
) -> str:
    """
    Generate the Makefile that builds, pushes and deploys the catalog image.

    :param str bundle_image: the bundle image the catalog was generated from, if any
    :param str image_uuid: the unique ttl.sh image name
    :param str random_ttl: the ttl.sh expiry, e.g. ``20m``
    :param str base_name: the prefix of the local image tag
    :return: the Makefile content
    :rtype: str
    """
    digest_suffix = extract_digest_suffix(bundle_image) if bundle_image else ''
    local_tag = f'{base_name}-catalog'
    if digest_suffix:
        local_tag = f'{local_tag}-sha-{digest_suffix}'

    lines = ['# Makefile generated by fbcgen']
    if bundle_image:
        lines.append(f'# Bundle: {bundle_image}')
    lines.extend(
        [
            '',
            'CONTAINER_TOOL ?= podman',
            'FBCGEN ?= fbcgen',
            'KUBECTL ?= kubectl',
            f'LOCAL_TAG ?= {local_tag}',
            f'TTL_IMAGE ?= ttl.sh/{image_uuid}:{random_ttl}',
            'MANIFESTS_DIR ?= manifests',
            '',
            '.PHONY: all build-image push-image prepare-deploy deploy undeploy clean',
            '',
            'all: deploy',
            '',
            'build-image:',
            '\t$(CONTAINER_TOOL) build -f Dockerfile -t $(LOCAL_TAG) .',
            '',
            'push-image: build-image',
            '\t$(CONTAINER_TOOL) tag $(LOCAL_TAG) $(TTL_IMAGE)',
            '\t$(CONTAINER_TOOL) push $(TTL_IMAGE)',
            '',
            'prepare-deploy: push-image',
            '\t$(FBCGEN) prepare-catalog-deployment-from-image $(TTL_IMAGE) '
            '--output-dir $(MANIFESTS_DIR)',
            '',
            'deploy: prepare-deploy',
            '\t$(KUBECTL) apply -f $(MANIFESTS_DIR)',
            '',
            'undeploy:',
            '\t$(KUBECTL) delete -f $(MANIFESTS_DIR) --ignore-not-found',
            '',
            'clean:',
            '\trm -rf $(MANIFESTS_DIR)',
            '\t-$(CONTAINER_TOOL) rmi $(LOCAL_TAG)',
            '',
        ]
    )
    return '\n'.join(lines)


def generate_workflow(
    bundle_count: int,
    catalog_rendered: bool,
    output_dir: str,
    image_uuid: str,
    random_ttl: str,
) -> str:
    """
    Generate the human readable instructions for the generated artifacts.

    :param int bundle_count: the number of bundles in the catalog
    :param bool catalog_rendered: whether ``catalog.yaml`` was written
    :param str output_dir: the directory holding the artifacts
    :param str image_uuid: the unique ttl.sh image name
    :param str random_ttl: the ttl.sh expiry
    :return: the instructions
    :rtype: str
    """
    lines = ['Catalog build workflow', '======================', '']
    if bundle_count == 1:
        lines.append('The catalog contains 1 bundle.')
    elif bundle_count > 1:
        lines.append(
            f'The catalog contains {bundle_count} bundles in a single upgrade chain, '
            'oldest first.'
        )
    lines.append('')

    step = 1
    lines.append(f'{step}. Change to the artifacts directory:')
    lines.append(f'     cd {output_dir}')
    step += 1
    if not catalog_rendered:
        lines.extend(
            [
                '',
                'The catalog could not be rendered automatically.',
                f'{step}. Render it manually from the template:',
                f'     {RENDER_TEMPLATE_COMMAND}',
            ]
        )
        step += 1

    lines.extend(
        [
            '',
            f'{step}. Build and push the catalog image to ttl.sh (expires after {random_ttl}):',
            '     make push-image',
            f'   The image is pushed to ttl.sh/{image_uuid}:{random_ttl}',
            '',
            f'{step + 1}. Generate the deployment manifests and apply them to the cluster:',
            '     make deploy',
            '',
            f'{step + 2}. Remove the deployment when done:',
            '     make undeploy',
            '',
        ]
    )
    return '\n'.join(lines)
