# This should be only one line. If it must be multi-line, indent the second
# line onwards to keep the PKG-INFO file format intact.
"""Declarative management of sops encrypted secret files for age recipients.
"""

from setuptools import find_packages, setup

version = open("src/sopsecrets/version.txt").read().strip()

setup(
    name="sopsecrets",
    version=version,
    install_requires=[
        "ConfigUpdater",
        "Jinja2",
        "importlib_resources",
        "py",
        "pyrage",
        "pyyaml",
    ],
    extras_require={
        "test": [
            "mock",
            "pytest",
            "pytest-timeout",
        ]
    },
    entry_points="""
        [console_scripts]
            sopsecrets = sopsecrets.main:main
    """,
    license="BSD (2-clause)",
    keywords="secrets sops age",
    classifiers="""\
License :: OSI Approved :: BSD License
Programming Language :: Python
Programming Language :: Python :: 3
Programming Language :: Python :: 3 :: Only
"""[:-1].split("\n"),
    description=__doc__.strip(),
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages("src"),
    package_dir={"": "src"},
    package_data={"sopsecrets": ["version.txt"]},
    include_package_data=True,
    zip_safe=False,
    python_requires=">=3.8",
)
