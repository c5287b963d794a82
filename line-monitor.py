#!/usr/bin/env python3
#
# Defect-threshold line monitor
#
# Polls recent quality defects against per-rule thresholds and drives the
# production line controller to running, warning or stopped.
#

from __future__ import annotations

from linemon.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
