#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander
