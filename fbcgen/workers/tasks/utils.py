# SPDX-License-Identifier: GPL-3.0-or-later
import functools
import getpass
import inspect
import json
import logging
import os
import re
import shutil
import socket
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from celery.app.log import TaskFormatter
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fbcgen.common.common_utils import get_binary_versions
from fbcgen.exceptions import AccessError, CancelledError, ExternalToolError, ValidationError
from fbcgen.workers.config import get_worker_config
from fbcgen.workers.dogpile_cache import (
    create_dogpile_region,
    dogpile_cache,
    inspection_should_use_cache,
)
from fbcgen.workers.tasks.fbcgen_static_types import SkopeoInspectOutput

log = logging.getLogger(__name__)
dogpile_cache_region = create_dogpile_region()

# How often a cancellable command checks the cancellation event, in seconds
CANCEL_POLL_INTERVAL = 0.5


def _regex_reverse_search(
    regex: str,
    proc_response: subprocess.CompletedProcess,
) -> Optional[re.Match]:
    """
    Find the last line of the standard error of a finished command matching ``regex``.

    :param str regex: the pattern each line is matched against
    :param subprocess.CompletedProcess proc_response: the finished command
    :return: the match of the lowest matching line, or ``None``
    :rtype: re.Match
    """
    # opm prints its usage after the error, so the error is the last "Error:" line
    for line in reversed((proc_response.stderr or '').splitlines()):
        match = re.match(regex, line)
        if match:
            return match
    return None


def _run_cancellable(
    cmd: List[str], params: Dict[str, Any], cancel_event: threading.Event
) -> subprocess.CompletedProcess:
    """
    Run the command while watching ``cancel_event``.

    :param list cmd: the command and its arguments
    :param dict params: keyword parameters for ``subprocess.Popen``
    :param threading.Event cancel_event: the event signalling the caller aborted the operation
    :return: the completed process
    :rtype: subprocess.CompletedProcess
    :raises CancelledError: if ``cancel_event`` is set before the command finishes
    :raises ExternalToolError: if the command cannot be started
    """
    if cancel_event.is_set():
        raise CancelledError(f'The command "{" ".join(cmd)}" was cancelled before it started')

    try:
        proc = subprocess.Popen(cmd, **params)
    except OSError as e:
        raise ExternalToolError(
            f'The command "{" ".join(cmd)}" could not be started: {e}'
        ) from e
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=CANCEL_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel_event.is_set():
                terminate_process(proc)
                raise CancelledError(f'The command "{" ".join(cmd)}" was cancelled')

    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def run_cmd(
    cmd: List[str],
    params: Optional[Dict[str, Any]] = None,
    exc_msg: Optional[str] = None,
    strict: bool = True,
    cancel_event: Optional[threading.Event] = None,
) -> str:
    """
    Run an external tool and return what it printed.

    :param list cmd: the command and its arguments
    :param dict params: extra keyword parameters for ``subprocess``
    :param str exc_msg: the message prefix of the error raised when the command fails
    :param bool strict: raise when the command exits with a non-zero status
    :param threading.Event cancel_event: when set while the command runs, the command is
        terminated and ``CancelledError`` is raised
    :return: the standard output of the command
    :rtype: str
    :raises ExternalToolError: if the command cannot be started or fails
    :raises CancelledError: if the command was cancelled
    """
    exc_msg = exc_msg or 'An unexpected error occurred'
    params = dict(params or {})
    for key, value in (
        ('universal_newlines', True),
        ('encoding', 'utf-8'),
        ('stdout', subprocess.PIPE),
        ('stderr', subprocess.PIPE),
    ):
        params.setdefault(key, value)

    command_line = ' '.join(cmd)
    log.debug('Running "%s"', command_line)
    response: subprocess.CompletedProcess
    if cancel_event is not None:
        response = _run_cancellable(cmd, params, cancel_event)
    else:
        try:
            response = subprocess.run(cmd, **params)
        except OSError as e:
            raise ExternalToolError(
                f'The command "{command_line}" could not be started: {e}'
            ) from e

    if not strict or response.returncode == 0:
        return response.stdout

    log.error('"%s" exited with %d: %s', command_line, response.returncode, response.stderr)
    prefix = exc_msg.rstrip('.')
    detail = (response.stderr or '').strip()
    if Path(cmd[0]).stem.startswith('opm'):
        match = _regex_reverse_search(r'^(?:Error: )(.+)$', response)
        if match:
            detail = match.group(1)

    raise ExternalToolError(
        f'{prefix}: {detail}' if detail else exc_msg,
        stderr=response.stderr,
        returncode=response.returncode,
    )


def terminate_process(proc: subprocess.Popen, timeout: int = 5) -> None:
    """
    Stop a running command, killing it if it outlives ``timeout`` seconds after SIGTERM.

    :param subprocess.Popen proc: the running command
    :param int timeout: seconds to wait after SIGTERM
    """
    log.debug('Sending SIGTERM to %s (pid %d)', proc.args, proc.pid)
    proc.terminate()
    try:
        # communicate() drains the pipes, wait() could block on a full pipe
        proc.communicate(timeout=timeout)
        log.info('The process %d stopped', proc.pid)
    except subprocess.TimeoutExpired:
        log.warning('The process %d is still running after %ss, killing it', proc.pid, timeout)
        proc.kill()


@retry(
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,
    retry=retry_if_exception_type(ExternalToolError),
    stop=stop_after_attempt(get_worker_config().fbcgen_total_attempts),
    wait=wait_exponential(multiplier=get_worker_config().fbcgen_retry_multiplier),
)
@dogpile_cache(
    dogpile_region=dogpile_cache_region, should_use_cache_fn=inspection_should_use_cache
)
def skopeo_inspect(
    *args,
    return_json: bool = True,
    cancel_event: Optional[threading.Event] = None,
) -> Union[Dict[str, Any], str]:
    """
    Run ``skopeo inspect`` with the given arguments.

    Digest pinned references are served from the inspection cache when a cache backend is
    configured.

    :param args: the arguments of ``skopeo inspect``, e.g. ``docker://quay.io/ns/repo:v1``
    :param bool return_json: decode the output as JSON; otherwise return the raw text
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the decoded inspection output
    :rtype: dict
    :raises ExternalToolError: if skopeo fails on every attempt
    """
    exc_msg = next(
        (
            f'Failed to inspect {arg}. Make sure it exists and is accessible.'
            for arg in args
            if arg.startswith('docker://')
        ),
        None,
    )
    cmd = ['skopeo', '--command-timeout', get_worker_config().fbcgen_skopeo_timeout, 'inspect']
    output = run_cmd(cmd + list(args), exc_msg=exc_msg, cancel_event=cancel_event)
    return json.loads(output) if return_json else output


@retry(
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,
    retry=retry_if_exception_type(ExternalToolError),
    stop=stop_after_attempt(get_worker_config().fbcgen_total_attempts),
    wait=wait_exponential(multiplier=get_worker_config().fbcgen_retry_multiplier),
)
def skopeo_list_tags(repository: str, cancel_event: Optional[threading.Event] = None) -> List[str]:
    """
    Wrap the ``skopeo list-tags`` command.

    :param str repository: the repository to list the tags of, without tag or digest
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the tags of the repository in the order the registry returned them
    :rtype: list
    :raises ExternalToolError: if the command fails
    """
    skopeo_timeout = get_worker_config().fbcgen_skopeo_timeout
    cmd = ['skopeo', '--command-timeout', skopeo_timeout, 'list-tags', f'docker://{repository}']
    output = run_cmd(
        cmd, exc_msg=f'Failed to list the tags of {repository}', cancel_event=cancel_event
    )
    return json.loads(output).get('Tags') or []


def inspect_image(
    pull_spec: str, cancel_event: Optional[threading.Event] = None
) -> SkopeoInspectOutput:
    """
    Inspect an image in its registry.

    :param str pull_spec: the pull specification of the image to inspect
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the digest, creation time and labels of the image
    :rtype: dict
    :raises AccessError: if the image is not accessible
    """
    log.debug('Inspecting %s', pull_spec)
    try:
        output = skopeo_inspect(f'docker://{pull_spec}', cancel_event=cancel_event)
    except ExternalToolError as e:
        raise AccessError(str(e), reference=pull_spec) from e
    return output


def prepare_output_dir(output_dir: str) -> str:
    """
    Prepare an empty output directory for generated artifacts.

    An existing directory is removed first so that no stale artifacts of a previous run remain.

    :param str output_dir: the directory to prepare
    :return: the absolute path of the directory
    :rtype: str
    :raises ValidationError: if ``output_dir`` is the current working directory
    """
    if os.path.normpath(output_dir) == '.' or os.path.abspath(output_dir) == os.getcwd():
        raise ValidationError(
            'The output directory cannot be the current working directory, '
            'please specify a named subdirectory'
        )

    abs_output_dir = os.path.abspath(output_dir)
    if os.path.exists(abs_output_dir):
        log.debug('Removing the existing output directory %s', abs_output_dir)
        shutil.rmtree(abs_output_dir)
    os.makedirs(abs_output_dir, exist_ok=True)
    return abs_output_dir


def write_artifact(output_dir: str, filename: str, content: str) -> str:
    """
    Write a generated artifact to the output directory.

    :param str output_dir: the directory to write to
    :param str filename: the name of the file to create
    :param str content: the content of the file
    :return: the path of the written file
    :rtype: str
    """
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, filename)
    with open(path, 'w') as f:
        f.write(content)
    log.debug('Wrote %s', path)
    return path


def request_logger(func: Callable) -> Callable:
    """
    Copy the log records emitted while a task runs into ``<request_id>.log``.

    Nothing is copied when ``fbcgen_request_logs_dir`` is unset. The file also records the host,
    the user and the versions of opm and skopeo the request ran with.

    :param function func: the task to decorate; it must accept ``request_id``
    :return: the decorated task
    :rtype: function
    """
    worker_config = get_worker_config()
    log_dir = worker_config.fbcgen_request_logs_dir
    log_level = worker_config.fbcgen_request_logs_level
    log_format = worker_config.fbcgen_request_logs_format

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        request_log_handler = None
        if log_dir:
            request_id = _get_function_arg_value('request_id', func, args, kwargs)
            if not request_id:
                raise ValidationError(f'Unable to get "request_id" from {func.__name__}')
            log_formatter = TaskFormatter(
                log_format.format(request_id=f'request-{request_id}'), use_color=False
            )
            log_file_path = os.path.join(log_dir, f'{request_id}.log')
            request_log_handler = logging.FileHandler(log_file_path)
            request_log_handler.setLevel(log_level)
            request_log_handler.setFormatter(log_formatter)
            os.chmod(log_file_path, 0o664)  # nosec
            logger = logging.getLogger()
            logger.addHandler(request_log_handler)
            logger.info(f'Host: {socket.getfqdn()}; User: {getpass.getuser()}')
            versions = get_binary_versions()
            logger.info(f"opm {versions['opm']}\n{versions['skopeo']}")
        try:
            return func(*args, **kwargs)
        finally:
            if request_log_handler:
                logger.removeHandler(request_log_handler)
                request_log_handler.flush()

    return wrapper


def _get_function_arg_value(
    arg_name: str,
    func: Callable,
    args: tuple,
    kwargs: Dict[Any, Any],
) -> Any:
    """Return the value of the given argument name."""
    original_func = func
    while getattr(original_func, '__wrapped__', None):
        original_func = original_func.__wrapped__  # type: ignore
    argspec = inspect.getfullargspec(original_func).args

    arg_index = argspec.index(arg_name)
    arg_value = kwargs.get(arg_name, None)
    if arg_value is None and len(args) > arg_index:
        arg_value = args[arg_index]
    return arg_value
