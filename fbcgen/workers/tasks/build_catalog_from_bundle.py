# SPDX-License-Identifier: GPL-3.0-or-later
import logging
import threading
from typing import Optional

from fbcgen.exceptions import FbcgenError, ValidationError
from fbcgen.workers.config import get_worker_config
from fbcgen.workers.tasks.bundle_utils import list_latest_bundles
from fbcgen.workers.tasks.celery import app
from fbcgen.workers.tasks.fbc_utils import (
    generate_catalog_dockerfile,
    generate_image_uuid_and_ttl,
    generate_makefile,
    generate_workflow,
    get_template_bundle_images,
    template_to_yaml,
)
from fbcgen.workers.tasks.fbcgen_static_types import ArtifactSummary, FBCTemplate
from fbcgen.workers.tasks.opm_operations import (
    generate_chain_fbc_template,
    generate_fbc_template,
    get_catalog_renderer,
)
from fbcgen.workers.tasks.utils import prepare_output_dir, request_logger, write_artifact

__all__ = ['handle_bundle_catalog_request', 'handle_bundle_chain_catalog_request']

log = logging.getLogger(__name__)


def _write_catalog_build_artifacts(
    template: FBCTemplate,
    output_dir: str,
    bundle_image: str,
    opm_bin: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ArtifactSummary:
    """
    Render the template and write the catalog build artifacts.

    A rendering failure does not fail the request; the template and the build files are still
    written and ``WORKFLOW.txt`` describes how to render the catalog manually.

    :param FBCTemplate template: the basic template of the catalog
    :param str output_dir: the directory to write the artifacts to
    :param str bundle_image: the bundle image the Makefile refers to
    :param str opm_bin: the external opm binary to render with
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the summary of the written artifacts
    :rtype: ArtifactSummary
    """
    conf = get_worker_config()
    output_dir = prepare_output_dir(output_dir)
    files = [write_artifact(output_dir, 'fbc-template.yaml', template_to_yaml(template))]

    render_error = None
    try:
        catalog = get_catalog_renderer(opm_bin).render(template, cancel_event=cancel_event)
    except (FbcgenError, ValidationError) as e:
        log.warning('The catalog could not be rendered, it has to be rendered manually: %s', e)
        render_error = str(e)
    else:
        files.append(write_artifact(output_dir, 'catalog.yaml', catalog))

    image_uuid, random_ttl = generate_image_uuid_and_ttl()
    files.append(
        write_artifact(
            output_dir, 'Dockerfile', generate_catalog_dockerfile(conf.fbcgen_catalog_base_image)
        )
    )
    files.append(
        write_artifact(
            output_dir,
            'Makefile',
            generate_makefile(
                bundle_image, image_uuid, random_ttl, base_name=conf.fbcgen_resource_base_name
            ),
        )
    )
    bundle_count = len(get_template_bundle_images(template))
    files.append(
        write_artifact(
            output_dir,
            'WORKFLOW.txt',
            generate_workflow(
                bundle_count, render_error is None, output_dir, image_uuid, random_ttl
            ),
        )
    )

    summary: ArtifactSummary = {
        'output_dir': output_dir,
        'files': files,
        'catalog_rendered': render_error is None,
    }
    if render_error:
        summary['render_error'] = render_error
    log.info('The catalog build artifacts were written to %s', output_dir)
    return summary


@app.task
@request_logger
def handle_bundle_catalog_request(
    request_id: str,
    bundle_image: str,
    output_dir: str,
    channel: Optional[str] = None,
    opm_bin: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ArtifactSummary:
    """
    Generate the artifacts building a catalog image from a single bundle image.

    :param str request_id: the ID of the request, used to name the request log
    :param str bundle_image: the bundle image reference
    :param str output_dir: the directory to write the artifacts to; it is emptied first
    :param str channel: the channel to publish the bundle in, ``fbcgen_default_channel`` by
        default
    :param str opm_bin: render with this opm binary instead of rendering in-process
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the summary of the written artifacts
    :rtype: ArtifactSummary
    """
    channel = channel or get_worker_config().fbcgen_default_channel
    log.info('Generating the catalog build artifacts of %s', bundle_image)
    template = generate_fbc_template(bundle_image, channel, cancel_event=cancel_event)
    return _write_catalog_build_artifacts(
        template, output_dir, bundle_image, opm_bin=opm_bin, cancel_event=cancel_event
    )


@app.task
@request_logger
def handle_bundle_chain_catalog_request(
    request_id: str,
    repository: str,
    count: int,
    output_dir: str,
    channel: Optional[str] = None,
    opm_bin: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ArtifactSummary:
    """
    Generate the artifacts building a catalog image from the newest bundles of a repository.

    The bundles form a single upgrade chain ordered by build date.

    :param str request_id: the ID of the request, used to name the request log
    :param str repository: the bundle repository without tag or digest
    :param int count: how many of the newest bundles to include
    :param str output_dir: the directory to write the artifacts to; it is emptied first
    :param str channel: the channel to publish the bundles in
    :param str opm_bin: render with this opm binary instead of rendering in-process
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the summary of the written artifacts
    :rtype: ArtifactSummary
    """
    channel = channel or get_worker_config().fbcgen_default_channel
    bundles = list_latest_bundles(repository, count, cancel_event=cancel_event)
    if not bundles:
        raise FbcgenError(f'No bundles were found in {repository}')

    log.info('Generating the catalog build artifacts of %d bundles of %s', len(bundles), repository)
    template = generate_chain_fbc_template(bundles, channel, cancel_event=cancel_event)
    return _write_catalog_build_artifacts(
        template, output_dir, bundles[0].image, opm_bin=opm_bin, cancel_event=cancel_event
    )
