# SPDX-License-Identifier: GPL-3.0-or-later
from typing import Dict

from fbcgen.exceptions import ExternalToolError


def get_binary_versions() -> Dict[str, str]:
    """
    Return the versions of the external tools fbcgen runs.

    A tool that is missing or fails to report its version is given an empty version.

    :return: the versions keyed by ``opm`` and ``skopeo``
    :rtype: dict
    """
    from fbcgen.workers.config import get_worker_config
    from fbcgen.workers.tasks.utils import run_cmd

    commands = {
        'opm': [get_worker_config().fbcgen_default_opm, 'version'],
        'skopeo': ['skopeo', '--version'],
    }
    versions = {}
    for tool, cmd in commands.items():
        try:
            versions[tool] = run_cmd(cmd, exc_msg=f'Failed to get {tool} version.').strip()
        except (ExternalToolError, FileNotFoundError):
            versions[tool] = ''
    return versions
