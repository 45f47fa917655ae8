# SPDX-License-Identifier: GPL-3.0-or-later
import logging
import threading
from typing import Optional

from fbcgen.workers.config import get_worker_config
from fbcgen.workers.tasks.celery import app
from fbcgen.workers.tasks.fbc_utils import dump_yaml
from fbcgen.workers.tasks.fbcgen_static_types import ArtifactSummary
from fbcgen.workers.tasks.manifest_utils import (
    ManifestConfig,
    ManifestGenerator,
    extract_catalog_metadata,
)
from fbcgen.workers.tasks.utils import prepare_output_dir, request_logger, write_artifact

__all__ = ['handle_catalog_deployment_request']

log = logging.getLogger(__name__)


@app.task
@request_logger
def handle_catalog_deployment_request(
    request_id: str,
    catalog_image: str,
    output_dir: str,
    namespace: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ArtifactSummary:
    """
    Generate the manifests deploying the operator from a catalog image.

    The catalog is rendered to find the default channel; unlike building a catalog, a rendering
    failure fails the request.

    :param str request_id: the ID of the request, used to name the request log
    :param str catalog_image: the catalog image reference
    :param str output_dir: the directory to write the manifests to; it is emptied first
    :param str namespace: the namespace to install the operator in, ``fbcgen_namespace`` by
        default
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the summary of the written manifests
    :rtype: ArtifactSummary
    """
    conf = get_worker_config()
    manifest_config = ManifestConfig.from_config(conf, namespace=namespace)
    catalog_meta = extract_catalog_metadata(
        catalog_image, package=manifest_config.operator_package, cancel_event=cancel_event
    )
    manifest_set = ManifestGenerator(manifest_config).generate(catalog_meta)

    output_dir = prepare_output_dir(output_dir)
    files = [
        write_artifact(output_dir, filename, f'---\n{dump_yaml(document)}')
        for filename, document in manifest_set.documents()
    ]
    log.info(
        'The manifests deploying %s from %s were written to %s',
        manifest_config.operator_package,
        catalog_meta.image,
        output_dir,
    )
    return {'output_dir': output_dir, 'files': files, 'catalog_rendered': True}
