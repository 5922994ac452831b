#!/usr/bin/python
# -*- encoding: utf-8 -*-
import ast
import re

from setuptools import find_packages
from setuptools import setup

## The version number is kept in one place only, as
## calbridge.__version__.  The regexp is the one used by the icalendar
## library.
_version_re = re.compile(r"__version__\s+=\s+(.*)")
with open("calbridge/__init__.py", "rb") as f:
    version = str(
        ast.literal_eval(_version_re.search(f.read().decode("utf-8")).group(1))
    )

if __name__ == "__main__":
    test_packages = [
        "pytest",
        "pytest-coverage",
        "coverage",
        "vobject",
        "pytz",
        "recurring-ical-events>=2.0.0",
        "pyyaml",
    ]

    setup(
        name="calbridge",
        version=version,
        description="iCalendar bridge between a booking system and CalDAV calendars",
        long_description=open("README.md").read(),
        long_description_content_type="text/markdown",
        classifiers=[
            "Development Status :: 4 - Beta",
            "Intended Audience :: Developers",
            "License :: OSI Approved :: Apache Software License",
            "Operating System :: OS Independent",
            "Programming Language :: Python",
            "Programming Language :: Python :: 3",
            "Topic :: Office/Business :: Scheduling",
            "Topic :: Software Development :: Libraries " ":: Python Modules",
        ],
        keywords="icalendar caldav vtimezone rrule",
        license="Apache-2.0",
        python_requires=">=3.9",
        packages=find_packages(exclude=["tests"]),
        include_package_data=True,
        zip_safe=False,
        install_requires=[
            "icalendar",
            "python-dateutil",
            "tzdata",
            "typing_extensions",
        ],
        extras_require={
            "test": test_packages,
            "yaml": ["pyyaml"],
        },
    )
