#!/usr/bin/env python

# In this form, setup.py is a stub to indicate
# this repository contains a python package.
# Package metadata, dependencies and tool settings
# live in pyproject.toml.

from setuptools import setup


if __name__ == "__main__":
    setup()
