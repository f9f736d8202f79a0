from setuptools import setup, find_packages

import pathlib
import re
HERE = pathlib.Path(__file__).parent
README = (HERE / "README.md").read_text()
VERSION = re.search(r"__version__ = '([^']+)'", (HERE / "pymusig2" / "version.py").read_text()).group(1)


setup(
    name="pymusig2",
    version=VERSION,
    python_requires='>=3.8',
    description="N-of-N MuSig2 Schnorr multi-signature sessions for python",
    long_description=README,
    long_description_content_type="text/markdown",
    author="rage-proof",
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
    ],
    include_package_data=True,
    packages=find_packages(exclude=["tests"]),
    install_requires=['chacha20poly1305==0.0.3'],
    extras_require={'test': ['pytest']},
)
