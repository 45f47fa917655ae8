# SPDX-License-Identifier: GPL-3.0-or-later
import abc
import json
import logging
import os
import re
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional

from packaging.version import Version

from fbcgen.exceptions import (
    ExternalToolError,
    FbcgenError,
    NotFoundError,
    ValidationError,
)
from fbcgen.workers.config import get_worker_config
from fbcgen.workers.tasks.fbc_utils import (
    BundleInfo,
    BundleMetadata,
    build_chain_template,
    build_single_template,
    dump_yaml_documents,
    template_to_yaml,
)
from fbcgen.workers.tasks.fbcgen_static_types import FBCTemplate, OlmBundleBlob, OlmPackageBlob

log = logging.getLogger(__name__)

MIGRATE_LEVEL = 'bundle-object-to-csv-metadata'
RenderFunc = Callable[..., List[Dict[str, Any]]]


class Opm:
    """An opm binary and the flags its version supports."""

    def __init__(self, opm_bin: Optional[str] = None):
        """
        Initialize the Opm object.

        :param str opm_bin: the opm binary to run, ``fbcgen_default_opm`` by default
        """
        self.opm_bin = opm_bin or get_worker_config().fbcgen_default_opm
        self._version_number: Optional[str] = None

    def __repr__(self):
        return f'Opm(opm_bin: {self.opm_bin})'

    def get_opm_version_number(self, cancel_event: Optional[threading.Event] = None) -> str:
        """
        Get the version number of the opm binary.

        :param threading.Event cancel_event: the caller's cancellation event
        :return: the version number, e.g. ``1.40.0``
        :rtype: str
        :raises FbcgenError: if the version is not in the output of ``opm version``
        """
        if self._version_number:
            return self._version_number

        from fbcgen.workers.tasks.utils import run_cmd

        log.info('Determining the version of %s', self.opm_bin)
        opm_version_output = run_cmd([self.opm_bin, 'version'], cancel_event=cancel_event)
        match = re.search(r'OpmVersion:"v([\d.]+)"', opm_version_output)
        if not match:
            raise FbcgenError(f'Opm version not found in the output of "{self.opm_bin} version"')

        self._version_number = match.group(1)
        return self._version_number

    def get_migrate_args(self, cancel_event: Optional[threading.Event] = None) -> List[str]:
        """
        Get the flags migrating rendered bundles to the CSV metadata representation.

        :param threading.Event cancel_event: the caller's cancellation event
        :return: the flags for ``opm render``
        :rtype: list
        """
        opm_new_migrate_version = get_worker_config().fbcgen_opm_new_migrate_version
        if Version(self.get_opm_version_number(cancel_event)) > Version(opm_new_migrate_version):
            return [f'--migrate-level={MIGRATE_LEVEL}']
        return ['--migrate']


def opm_render(
    refs: List[str],
    bundle_only: bool = True,
    opm: Optional[Opm] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[Dict[str, Any]]:
    """
    Run ``opm render`` and parse the declarative config it emits.

    :param list refs: the bundle or catalog image references to render
    :param bool bundle_only: only accept bundle images; a reference rendering to anything other
        than ``olm.bundle`` blobs is rejected
    :param Opm opm: the opm binary to use
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the rendered declarative config blobs
    :rtype: list(dict)
    :raises ExternalToolError: if ``opm render`` fails
    :raises ValidationError: if ``bundle_only`` is set and a catalog was rendered
    """
    from fbcgen.workers.tasks.utils import run_cmd

    if not refs:
        raise ValidationError('At least one reference is required to render')

    opm = opm or Opm()
    cmd = [opm.opm_bin, 'render', *refs, *opm.get_migrate_args(cancel_event), '-o', 'json']
    opm_render_output = run_cmd(
        cmd,
        exc_msg=f'Failed to run opm render with input: {", ".join(refs)}',
        cancel_event=cancel_event,
    )

    if not opm_render_output or not opm_render_output.strip():
        log.info('There are no data in %s', ', '.join(refs))
        return []

    log.debug('Parsing data from opm render')
    blobs = [
        json.loads(blob) for blob in re.split(r'(?<=})\n(?={)', opm_render_output.strip())
    ]
    if bundle_only:
        schemas = sorted(
            {blob.get('schema') for blob in blobs if blob.get('schema') != 'olm.bundle'}
        )
        if schemas:
            raise ValidationError(
                f'Only bundle images may be rendered, but {", ".join(refs)} contained '
                f'{", ".join(str(schema) for schema in schemas)} blobs'
            )
    return blobs


def extract_bundle_info(
    bundle_image: str,
    render: Optional[RenderFunc] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BundleInfo:
    """
    Get the bundle name and package of a bundle image.

    The rendered bundle must carry exactly the requested image reference, so that a bundle
    substituted by a registry mirror is never mistaken for the requested one.

    :param str bundle_image: the bundle image reference
    :param callable render: the render capability, ``opm_render`` by default
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the bundle identity
    :rtype: BundleInfo
    :raises NotFoundError: if no rendered bundle has the requested image
    """
    render = render or opm_render
    log.info('Extracting the bundle metadata of %s', bundle_image)
    blobs = render([bundle_image], bundle_only=True, cancel_event=cancel_event)
    for blob in blobs:
        if blob.get('schema') == 'olm.bundle' and blob.get('image') == bundle_image:
            return BundleInfo(name=blob['name'], package=blob['package'])

    raise NotFoundError(f'The bundle {bundle_image} was not found in the rendered config')


def generate_fbc_template(
    bundle_image: str,
    channel: Optional[str] = None,
    render: Optional[RenderFunc] = None,
    cancel_event: Optional[threading.Event] = None,
) -> FBCTemplate:
    """
    Generate the basic template of a catalog containing a single bundle image.

    :param str bundle_image: the bundle image reference
    :param str channel: the channel to publish the bundle in
    :param callable render: the render capability, ``opm_render`` by default
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the template
    :rtype: FBCTemplate
    """
    if not bundle_image:
        raise ValidationError('The bundle image cannot be empty')
    bundle_info = extract_bundle_info(bundle_image, render=render, cancel_event=cancel_event)
    return build_single_template(bundle_image, bundle_info, channel)


def generate_chain_fbc_template(
    bundles: List[BundleMetadata],
    channel: Optional[str] = None,
    render: Optional[RenderFunc] = None,
    cancel_event: Optional[threading.Event] = None,
) -> FBCTemplate:
    """
    Generate the basic template of a catalog with an upgrade chain of bundle images.

    :param list bundles: the bundles of the chain
    :param str channel: the channel to publish the bundles in
    :param callable render: the render capability, ``opm_render`` by default
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the template
    :rtype: FBCTemplate
    :raises ValidationError: if no bundles are given or they belong to different packages
    """
    if not bundles:
        raise ValidationError('No bundles were provided')

    packages = []
    for bundle in bundles:
        bundle_info = extract_bundle_info(bundle.image, render=render, cancel_event=cancel_event)
        packages.append(bundle_info.package)

    if len(set(packages)) != 1:
        raise ValidationError(
            'All bundles must belong to the same package, found: '
            f'{", ".join(sorted(set(packages)))}'
        )
    return build_chain_template(bundles, packages[0], channel)


def get_default_channel(
    catalog_image: str,
    package: Optional[str] = None,
    render: Optional[RenderFunc] = None,
    cancel_event: Optional[threading.Event] = None,
) -> str:
    """
    Get the default channel of a package served by a catalog image.

    :param str catalog_image: the catalog image reference
    :param str package: the package to look up; optional when the catalog has a single package
    :param callable render: the render capability, ``opm_render`` by default
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the default channel
    :rtype: str
    :raises NotFoundError: if the package is not in the catalog
    :raises ValidationError: if the package has no default channel
    """
    render = render or opm_render
    blobs = render([catalog_image], bundle_only=False, cancel_event=cancel_event)
    packages: List[OlmPackageBlob] = [
        blob for blob in blobs if blob.get('schema') == 'olm.package'  # type: ignore
    ]
    if not packages:
        raise NotFoundError(f'No olm.package was found in the catalog {catalog_image}')

    selected = [p for p in packages if package and p['name'] == package]
    if not selected:
        if len(packages) != 1:
            raise NotFoundError(
                f'The package {package} was not found in the catalog {catalog_image}'
            )
        selected = packages

    default_channel = selected[0].get('defaultChannel')
    if not default_channel:
        raise ValidationError(
            f'The package {selected[0]["name"]} in {catalog_image} has no default channel'
        )
    return default_channel


def _sort_declarative_config(blobs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Order declarative config blobs per package: package, channels, bundles, then the rest.

    :param list blobs: the blobs to order
    :return: the ordered blobs
    :rtype: list
    """
    rank = {'olm.package': 0, 'olm.channel': 1, 'olm.bundle': 2}

    def key(blob: Dict[str, Any]):
        package = blob['name'] if blob.get('schema') == 'olm.package' else blob.get('package', '')
        return (package == '', package, rank.get(blob.get('schema', ''), 3), blob.get('name', ''))

    return sorted(blobs, key=key)


class CatalogRenderer(abc.ABC):
    """Renders a basic template into a declarative config catalog."""

    def render(self, template: FBCTemplate, cancel_event: Optional[threading.Event] = None) -> str:
        """
        Render the template.

        :param FBCTemplate template: the basic template to render
        :param threading.Event cancel_event: the caller's cancellation event
        :return: the rendered catalog as YAML
        :rtype: str
        :raises FbcgenError: if the rendering fails or produces nothing
        """
        log.info('Rendering the catalog with %r', self)
        catalog = self._render(template, cancel_event)
        if not catalog or not catalog.strip():
            raise FbcgenError('Rendering the catalog template produced an empty catalog')
        return catalog

    @abc.abstractmethod
    def _render(self, template: FBCTemplate, cancel_event: Optional[threading.Event]) -> str:
        raise NotImplementedError()


class LibraryCatalogRenderer(CatalogRenderer):
    """
    Render the template in-process, one bundle image at a time.

    Package and channel entries are kept as they are; each bundle entry is replaced with the
    bundle rendered from its image, which is how ``opm alpha render-template basic`` expands a
    template.
    """

    def __init__(self, render: Optional[RenderFunc] = None, opm: Optional[Opm] = None):
        self._render_capability = render or opm_render
        self.opm = opm

    def __repr__(self):
        return 'LibraryCatalogRenderer()'

    def _render(self, template: FBCTemplate, cancel_event: Optional[threading.Event]) -> str:
        render_kwargs: Dict[str, Any] = {'bundle_only': True, 'cancel_event': cancel_event}
        if self.opm:
            render_kwargs['opm'] = self.opm

        blobs: List[Dict[str, Any]] = []
        for entry in template['entries']:
            if entry['schema'] != 'olm.bundle':
                blobs.append(dict(entry))
                continue
            image = entry.get('image')
            if not image:
                raise ValidationError(f'The bundle entry {entry.get("name")} has no image')
            try:
                rendered: List[OlmBundleBlob] = self._render_capability(  # type: ignore
                    [image], **render_kwargs
                )
            except ExternalToolError as e:
                raise ExternalToolError(
                    f'Failed to render bundle {image}: {e}',
                    stderr=e.stderr,
                    returncode=e.returncode,
                ) from e
            blobs.extend(rendered)  # type: ignore

        return dump_yaml_documents(_sort_declarative_config(blobs))


class BinaryCatalogRenderer(CatalogRenderer):
    """Render the template with ``opm alpha render-template basic`` in a subprocess."""

    def __init__(self, opm_bin: Optional[str] = None):
        self.opm_bin = opm_bin or get_worker_config().fbcgen_default_opm

    def __repr__(self):
        return f'BinaryCatalogRenderer(opm_bin: {self.opm_bin})'

    def _render(self, template: FBCTemplate, cancel_event: Optional[threading.Event]) -> str:
        from fbcgen.workers.tasks.utils import run_cmd

        template_yaml = template_to_yaml(template)
        with tempfile.TemporaryDirectory(prefix='fbcgen-render-') as temp_dir:
            template_file = os.path.join(temp_dir, 'template.yaml')
            with open(template_file, 'w') as f:
                f.write(template_yaml)

            cmd = [
                self.opm_bin,
                'alpha',
                'render-template',
                'basic',
                f'--migrate-level={MIGRATE_LEVEL}',
                '-o',
                'yaml',
                template_file,
            ]
            return run_cmd(
                cmd,
                {'cwd': temp_dir},
                exc_msg='Failed to render the catalog template',
                cancel_event=cancel_event,
            )


def get_catalog_renderer(opm_bin: Optional[str] = None) -> CatalogRenderer:
    """
    Get the catalog renderer for a request.

    :param str opm_bin: the external opm binary to render with; the in-process renderer is used
        when it is not set
    :return: the catalog renderer
    :rtype: CatalogRenderer
    """
    if opm_bin:
        return BinaryCatalogRenderer(opm_bin)
    return LibraryCatalogRenderer()
