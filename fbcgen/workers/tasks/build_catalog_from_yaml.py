# SPDX-License-Identifier: GPL-3.0-or-later
import logging

from fbcgen.exceptions import ValidationError
from fbcgen.workers.config import get_worker_config
from fbcgen.workers.tasks.celery import app
from fbcgen.workers.tasks.fbc_utils import (
    generate_catalog_dockerfile,
    generate_image_uuid_and_ttl,
    generate_makefile,
    generate_workflow,
    load_yaml_documents,
)
from fbcgen.workers.tasks.fbcgen_static_types import ArtifactSummary
from fbcgen.workers.tasks.utils import prepare_output_dir, request_logger, write_artifact

__all__ = ['handle_catalog_yaml_request']

log = logging.getLogger(__name__)


def validate_catalog_content(content: str) -> int:
    """
    Check that the content is a declarative config catalog.

    :param str content: the catalog YAML stream
    :return: the number of bundles in the catalog
    :rtype: int
    :raises ParseError: if the content is not valid YAML
    :raises ValidationError: if the content has no ``olm.package`` document
    """
    documents = load_yaml_documents(content)
    schemas = [doc.get('schema') for doc in documents if isinstance(doc, dict)]
    if 'olm.package' not in schemas:
        raise ValidationError('The catalog does not contain an olm.package document')
    return schemas.count('olm.bundle')


@app.task
@request_logger
def handle_catalog_yaml_request(
    request_id: str, catalog_yaml: str, output_dir: str
) -> ArtifactSummary:
    """
    Wrap an existing catalog description with the artifacts building a catalog image from it.

    :param str request_id: the ID of the request, used to name the request log
    :param str catalog_yaml: the path of the catalog YAML file
    :param str output_dir: the directory to write the artifacts to; it is emptied first
    :return: the summary of the written artifacts
    :rtype: ArtifactSummary
    """
    conf = get_worker_config()
    try:
        with open(catalog_yaml, 'r') as f:
            content = f.read()
    except OSError as e:
        raise ValidationError(f'The catalog {catalog_yaml} could not be read: {e}')

    bundle_count = validate_catalog_content(content)
    log.info('The catalog %s contains %d bundles', catalog_yaml, bundle_count)

    output_dir = prepare_output_dir(output_dir)
    image_uuid, random_ttl = generate_image_uuid_and_ttl()
    files = [
        write_artifact(output_dir, 'catalog.yaml', content),
        write_artifact(
            output_dir, 'Dockerfile', generate_catalog_dockerfile(conf.fbcgen_catalog_base_image)
        ),
        write_artifact(
            output_dir,
            'Makefile',
            generate_makefile('', image_uuid, random_ttl, base_name=conf.fbcgen_resource_base_name),
        ),
        write_artifact(
            output_dir,
            'WORKFLOW.txt',
            generate_workflow(bundle_count, True, output_dir, image_uuid, random_ttl),
        ),
    ]
    return {'output_dir': output_dir, 'files': files, 'catalog_rendered': True}
