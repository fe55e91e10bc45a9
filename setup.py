#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
dht-tester setup script (legacy compatibility)
==============================================

Packaging metadata lives in pyproject.toml. This shim keeps
``python setup.py develop`` working for tooling that still calls it;
use ``pip install -e .[test]`` otherwise.
"""

from setuptools import setup

setup()
