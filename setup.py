#!/usr/bin/env python3

import os
from setuptools import setup, find_namespace_packages


here = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(here, 'README.md')) as f:
    README = f.read()


if __name__ == "__main__":
    setup(
        name = 'phylax-gate',
        setup_requires = ['setuptools_scm'],
        use_scm_version = {'fallback_version': '0.1.0'},
        description = 'Gate for container images based on the vulnerabilities reported by Clair.',
        long_description = README,
        long_description_content_type = 'text/markdown',
        classifiers = [
            "Programming Language :: Python",
        ],
        keywords = 'container image scan security vulnerability clair gate',
        packages = find_namespace_packages(include = ['phylax.*']),
        include_package_data = True,
        zip_safe = False,
        python_requires = '>=3.10',
        install_requires = [
            'wrapt',
            'httpx',
            'pydantic>=2',
            'python-dateutil',
            'sortedcontainers',
            'pyyaml',
        ],
        extras_require = {
            'test': [
                'pytest',
                'pytest-asyncio',
            ],
        },
        entry_points = {
            # Entrypoint defining the completeness predicates available in the core package
            'phylax.gate.completeness': [
                'stable = phylax.gate.completeness:scanners_stable',
                'immediate = phylax.gate.completeness:first_result',
            ],
        }
    )
