# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Ok / Err result values returned at component boundaries.

    result = await broker.exchange()
    if result.ok:
        token = result.value
    else:
        log.warning("No token: %s", result.error)
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Ok:
    value: Any = None

    ok = True

    def unwrap(self):
        return self.value


@dataclass(frozen=True)
class Err:
    error: Exception

    ok = False

    def unwrap(self):
        raise self.error

    def is_kind(self, kind) -> bool:
        return isinstance(self.error, kind)
