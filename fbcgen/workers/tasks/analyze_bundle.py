# SPDX-License-Identifier: GPL-3.0-or-later
import logging
import threading
from typing import Optional

from fbcgen.workers.tasks.analysis_utils import analyze_bundle, format_analysis
from fbcgen.workers.tasks.celery import app
from fbcgen.workers.tasks.utils import request_logger

__all__ = ['handle_bundle_analysis_request']

log = logging.getLogger(__name__)


@app.task
@request_logger
def handle_bundle_analysis_request(
    request_id: str,
    bundle_image: str,
    show_all: bool = False,
    output_format: str = 'text',
    cancel_event: Optional[threading.Event] = None,
) -> str:
    """
    Report where each image referenced by a bundle can be pulled from.

    :param str request_id: the ID of the request, used to name the request log
    :param str bundle_image: the bundle image reference
    :param bool show_all: include the images that are not accessible
    :param str output_format: ``text`` or ``json``
    :param threading.Event cancel_event: the caller's cancellation event
    :return: the formatted analysis
    :rtype: str
    """
    analysis = analyze_bundle(bundle_image, show_all=show_all, cancel_event=cancel_event)
    log.info(
        'Analyzed %s: %d of %d images are accessible',
        bundle_image,
        analysis.summary.accessible_images,
        analysis.summary.total_images,
    )
    return format_analysis(analysis, output_format)
