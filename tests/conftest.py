# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

_THIS_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _THIS_DIR.parent

for _p in (_REPO_ROOT, _THIS_DIR):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

os.environ.setdefault("PYTHONPATH", str(_REPO_ROOT))


@pytest.fixture
def no_sleep():
    with patch("time.sleep") as m:
        yield m


@pytest.fixture
def fake_host():
    from fakes.fake_host import FakeHost

    host = FakeHost()
    with host.installed():
        yield host
