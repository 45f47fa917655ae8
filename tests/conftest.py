# SPDX-License-Identifier: GPL-3.0-or-later
import os

# The Celery application is configured when it's imported, so select the testing configuration
# before any fbcgen module is imported
os.environ.setdefault('FBCGEN_TESTING', 'true')

import pytest  # noqa: E402

from fbcgen.workers.tasks.fbc_utils import BundleMetadata  # noqa: E402

BUNDLE_REPO = 'quay.io/redhat-user-workloads/ocp-bpfman-tenant/bpfman-operator-bundle-ystream'
DIGEST_A = 'sha256:' + 'a' * 64
DIGEST_B = 'sha256:' + 'b' * 64
DIGEST_C = 'sha256:' + 'c' * 64


@pytest.fixture()
def bundle_blob():
    return {
        'schema': 'olm.bundle',
        'name': 'bpfman-operator.v0.5.6',
        'package': 'bpfman-operator',
        'image': f'{BUNDLE_REPO}@{DIGEST_A}',
        'properties': [
            {'type': 'olm.package', 'value': {'packageName': 'bpfman-operator', 'version': '0.5.6'}}
        ],
        'relatedImages': [
            {'name': 'agent', 'image': 'registry.redhat.io/bpfman/bpfman-agent@' + DIGEST_B},
            {'name': 'operator', 'image': 'registry.redhat.io/bpfman/bpfman-rhel9-operator:v0.5.6'},
            {'name': '', 'image': f'{BUNDLE_REPO}@{DIGEST_A}'},
        ],
    }


@pytest.fixture()
def chain_bundles():
    return [
        BundleMetadata(
            image=f'{BUNDLE_REPO}@{DIGEST_C}',
            digest=DIGEST_C,
            tag='cccccccc1234',
            version='0.5.8',
            build_date='2025-10-03T09:00:00Z',
        ),
        BundleMetadata(
            image=f'{BUNDLE_REPO}@{DIGEST_A}',
            digest=DIGEST_A,
            tag='aaaaaaaa1234',
            version='0.5.6',
            build_date='2025-10-01T08:15:30Z',
        ),
        BundleMetadata(
            image=f'{BUNDLE_REPO}@{DIGEST_B}',
            digest=DIGEST_B,
            tag='bbbbbbbb1234',
            version='0.5.7',
            build_date='2025-10-02T12:05:37Z',
        ),
    ]
