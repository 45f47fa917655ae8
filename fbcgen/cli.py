# SPDX-License-Identifier: GPL-3.0-or-later
"""The fbcgen command line interface."""
import functools
import logging
import os
import signal
import sys
import threading
import uuid
from typing import Callable, Optional

import click

from fbcgen.common.pydantic_models import (
    BundleAnalysisPydanticModel,
    BundleCatalogPydanticModel,
    BundleChainCatalogPydanticModel,
    CatalogDeploymentPydanticModel,
    CatalogYamlPydanticModel,
)
from fbcgen.exceptions import BaseException as FbcgenBaseException
from fbcgen.workers.config import get_worker_config

log = logging.getLogger(__name__)

LOG_LEVELS = ('debug', 'info', 'warning', 'error')


def _install_cancel_handlers(cancel_event: threading.Event) -> None:
    def handler(signum, frame):
        log.debug('Received signal %s, cancelling', signal.Signals(signum).name)
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def handle_errors(func: Callable) -> Callable:
    """
    Run a command with a cancellation event and report fbcgen errors as ``Error: ...``.

    The decorated function receives the ``cancel_event`` keyword argument, which is set when
    SIGINT or SIGTERM is received.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        cancel_event = threading.Event()
        _install_cancel_handlers(cancel_event)
        try:
            return func(*args, cancel_event=cancel_event, **kwargs)
        except FbcgenBaseException as e:
            log.debug('The command failed', exc_info=True)
            click.echo(f'Error: {e}', err=True)
            sys.exit(1)

    return wrapper


def _new_request_id() -> str:
    return uuid.uuid4().hex


def _print_workflow(output_dir: str) -> None:
    workflow_path = os.path.join(output_dir, 'WORKFLOW.txt')
    with open(workflow_path, 'r') as f:
        click.echo(f.read(), nl=False)
    click.echo(f'\nThis information is saved in {workflow_path}')


@click.group()
@click.option(
    '--log-level',
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default='info',
    show_default=True,
    envvar='FBCGEN_LOG_LEVEL',
    help='The level of the log messages printed to standard error.',
)
def cli(log_level: str) -> None:
    """Generate OLM file-based catalogs and the manifests deploying them."""
    logging.basicConfig(
        level=log_level.upper(), format='%(asctime)s %(levelname)s %(name)s %(message)s'
    )
    # Loading the worker configuration sets the level of the worker loggers, so load it first and
    # let them inherit the level chosen here
    get_worker_config()
    logging.getLogger('fbcgen').setLevel(log_level.upper())
    logging.getLogger('fbcgen.workers').setLevel(logging.NOTSET)


@cli.command('prepare-catalog-build-from-bundle')
@click.argument('bundle_image')
@click.option('--output-dir', help='The directory to write the artifacts to.')
@click.option('--channel', help='The channel to publish the bundle in.')
@click.option(
    '--opm-bin',
    type=click.Path(dir_okay=False),
    help='Render the catalog with this opm binary instead of in-process.',
)
@handle_errors
def prepare_catalog_build_from_bundle(
    bundle_image: str,
    output_dir: Optional[str],
    channel: Optional[str],
    opm_bin: Optional[str],
    cancel_event: threading.Event,
) -> None:
    """Prepare the artifacts building a catalog image from a bundle image."""
    from fbcgen.workers.tasks.build_catalog_from_bundle import handle_bundle_catalog_request

    request = BundleCatalogPydanticModel(
        bundle_image=bundle_image,
        output_dir=output_dir or get_worker_config().fbcgen_artifacts_dir,
        channel=channel,
        opm_bin=opm_bin,
    )
    summary = handle_bundle_catalog_request(
        _new_request_id(), cancel_event=cancel_event, **request.get_task_kwargs()
    )
    _print_workflow(summary['output_dir'])


@cli.command('prepare-catalog-build-from-bundles')
@click.option('--repository', help='The bundle repository, without tag or digest.')
@click.option(
    '--count', type=int, default=2, show_default=True, help='How many of the newest bundles to use.'
)
@click.option('--output-dir', help='The directory to write the artifacts to.')
@click.option('--channel', help='The channel to publish the bundles in.')
@click.option(
    '--opm-bin',
    type=click.Path(dir_okay=False),
    help='Render the catalog with this opm binary instead of in-process.',
)
@handle_errors
def prepare_catalog_build_from_bundles(
    repository: Optional[str],
    count: int,
    output_dir: Optional[str],
    channel: Optional[str],
    opm_bin: Optional[str],
    cancel_event: threading.Event,
) -> None:
    """Prepare the artifacts building a catalog image from the newest bundles of a repository."""
    from fbcgen.workers.tasks.build_catalog_from_bundle import handle_bundle_chain_catalog_request

    conf = get_worker_config()
    request = BundleChainCatalogPydanticModel(
        repository=repository or conf.fbcgen_default_bundle_repository,
        count=count,
        output_dir=output_dir or conf.fbcgen_artifacts_dir,
        channel=channel,
        opm_bin=opm_bin,
    )
    summary = handle_bundle_chain_catalog_request(
        _new_request_id(), cancel_event=cancel_event, **request.get_task_kwargs()
    )
    _print_workflow(summary['output_dir'])


@cli.command('prepare-catalog-build-from-yaml')
@click.argument('catalog_yaml', type=click.Path(exists=True, dir_okay=False))
@click.option('--output-dir', help='The directory to write the artifacts to.')
@handle_errors
def prepare_catalog_build_from_yaml(
    catalog_yaml: str, output_dir: Optional[str], cancel_event: threading.Event
) -> None:
    """Prepare the artifacts building a catalog image from an existing catalog YAML file."""
    from fbcgen.workers.tasks.build_catalog_from_yaml import handle_catalog_yaml_request

    request = CatalogYamlPydanticModel(
        catalog_yaml=catalog_yaml,
        output_dir=output_dir or get_worker_config().fbcgen_artifacts_dir,
    )
    summary = handle_catalog_yaml_request(_new_request_id(), **request.get_task_kwargs())
    _print_workflow(summary['output_dir'])


@cli.command('prepare-catalog-deployment-from-image')
@click.argument('catalog_image')
@click.option('--output-dir', help='The directory to write the manifests to.')
@click.option('--namespace', help='The namespace to install the operator in.')
@handle_errors
def prepare_catalog_deployment_from_image(
    catalog_image: str,
    output_dir: Optional[str],
    namespace: Optional[str],
    cancel_event: threading.Event,
) -> None:
    """Prepare the manifests deploying the operator from a catalog image."""
    from fbcgen.workers.tasks.build_catalog_deployment import handle_catalog_deployment_request

    request = CatalogDeploymentPydanticModel(
        catalog_image=catalog_image,
        output_dir=output_dir or get_worker_config().fbcgen_manifests_dir,
        namespace=namespace,
    )
    summary = handle_catalog_deployment_request(
        _new_request_id(), cancel_event=cancel_event, **request.get_task_kwargs()
    )
    click.echo(f'Manifests generated in {summary["output_dir"]}')


@cli.command('analyse-bundle')
@click.argument('bundle_image')
@click.option(
    '--format',
    'output_format',
    type=click.Choice(['text', 'json']),
    default='text',
    show_default=True,
    help='The output format.',
)
@click.option('--show-all', is_flag=True, help='Include the images that are not accessible.')
@handle_errors
def analyse_bundle(
    bundle_image: str, output_format: str, show_all: bool, cancel_event: threading.Event
) -> None:
    """Report where each image referenced by a bundle can be pulled from."""
    from fbcgen.workers.tasks.analyze_bundle import handle_bundle_analysis_request

    request = BundleAnalysisPydanticModel(
        bundle_image=bundle_image, show_all=show_all, output_format=output_format
    )
    output = handle_bundle_analysis_request(
        _new_request_id(), cancel_event=cancel_event, **request.get_task_kwargs()
    )
    click.echo(output, nl=False)


@cli.command('list-bundles')
@click.option('--repository', help='The bundle repository, without tag or digest.')
@click.option(
    '--list',
    'limit',
    type=int,
    default=1,
    show_default=True,
    help='How many of the newest bundles to list.',
)
@click.option(
    '--format',
    'output_format',
    type=click.Choice(['text', 'json']),
    default='text',
    show_default=True,
    help='The output format.',
)
@handle_errors
def list_bundles(
    repository: Optional[str], limit: int, output_format: str, cancel_event: threading.Event
) -> None:
    """List the newest bundle images of a repository."""
    from fbcgen.workers.tasks.bundle_utils import format_bundles, list_latest_bundles

    repository = repository or get_worker_config().fbcgen_default_bundle_repository
    bundles = list_latest_bundles(repository, limit, cancel_event=cancel_event)
    click.echo(format_bundles(bundles, output_format), nl=output_format == 'json')
