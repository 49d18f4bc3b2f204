#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

__version__ = "0.4.0"
__license__ = "MIT"
__description__ = "flashkeeper settles flash-loan funded liquidations and vault reward compounding on EVM lending markets."
