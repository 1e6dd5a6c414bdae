"""Setup configuration for Tedee Local."""
#
# Copyright 2025 The TedeeLocal contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from setuptools import setup, find_packages
from pathlib import Path
import re

here = Path(__file__).parent

# Read the version without importing the package (dependencies may be missing)
version_file = here / "tedee_local" / "__version__.py"
__version__ = re.search(r'__version__\s*=\s*"([^"]+)"', version_file.read_text(encoding="utf-8")).group(1)

readme_file = here / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

requirements_file = here / "requirements.txt"
requirements = []
if requirements_file.exists():
    requirements = [
        line.strip()
        for line in requirements_file.read_text(encoding="utf-8").splitlines()
        if line.strip() and not line.startswith("#")
    ]

setup(
    name="tedee-local",
    version=__version__,
    author="Tedee Local Contributors",
    description="Webhook-driven REST API for Tedee locks via the Tedee bridge local API",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Home Automation",
    ],
    python_requires=">=3.11",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "tedee-local=tedee_local.__main__:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
