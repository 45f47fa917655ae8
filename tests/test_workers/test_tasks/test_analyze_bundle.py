# SPDX-License-Identifier: GPL-3.0-or-later
import json
import threading
from unittest import mock

from fbcgen.workers.tasks import analyze_bundle
from fbcgen.workers.tasks.analysis_utils import (
    BundleAnalysis,
    ImageInspectionResult,
    RegistryClass,
    calculate_summary,
)

BUNDLE = 'quay.io/ns/bpfman-operator-bundle:v0.5.6'


def _analysis():
    images = [
        ImageInspectionResult(
            reference='registry.redhat.io/bpfman/bpfman-agent:v0.5.6',
            accessible=True,
            registry_class=RegistryClass.PRIMARY,
        )
    ]
    return BundleAnalysis(bundle_ref=BUNDLE, images=images, summary=calculate_summary(images))


@mock.patch('fbcgen.workers.tasks.analyze_bundle.analyze_bundle')
def test_handle_bundle_analysis_request(mock_ab):
    mock_ab.return_value = _analysis()
    cancel_event = threading.Event()

    output = analyze_bundle.handle_bundle_analysis_request(
        'abc123', BUNDLE, show_all=True, cancel_event=cancel_event
    )

    assert output.startswith(f'Bundle: {BUNDLE}\n')
    assert '[Primary] registry.redhat.io/bpfman/bpfman-agent:v0.5.6' in output
    mock_ab.assert_called_once_with(BUNDLE, show_all=True, cancel_event=cancel_event)


@mock.patch('fbcgen.workers.tasks.analyze_bundle.analyze_bundle')
def test_handle_bundle_analysis_request_json(mock_ab):
    mock_ab.return_value = _analysis()

    output = analyze_bundle.handle_bundle_analysis_request('abc123', BUNDLE, output_format='json')

    data = json.loads(output)
    assert data['bundleRef'] == BUNDLE
    assert data['summary']['primaryImages'] == 1
    mock_ab.assert_called_once_with(BUNDLE, show_all=False, cancel_event=None)
