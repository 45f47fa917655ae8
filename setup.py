# SPDX-License-Identifier: GPL-3.0-or-later
from setuptools import setup, find_packages

setup(
    name='fbcgen',
    version='0.1.0',
    long_description=__doc__,
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    zip_safe=False,
    install_requires=[
        'celery',
        'click',
        'dogpile.cache',
        'pydantic>=2',
        'python-memcached',
        'ruamel.yaml',
        'ruamel.yaml.clib',
        'tenacity',
        'typing-extensions',
        'packaging',
    ],
    extras_require={'test': ['pytest']},
    classifiers=[
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
    ],
    entry_points={'console_scripts': ['fbcgen=fbcgen.cli:cli']},
    license="GPLv3+",
    python_requires='>=3.8',
)
