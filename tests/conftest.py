import os as _os
import sys

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from bluegreen import db  # noqa: E402
from bluegreen.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def state_db(tmp_path):
    """Every test gets its own sqlite state database."""
    path = str(tmp_path / "state.db")
    db.init_db(path)
    return path


@pytest.fixture
def cfg(state_db):
    return Settings(
        db_path=state_db,
        rollout_timeout_s=1.0,
        health_timeout_s=0.3,
        health_interval_s=0.01,
        health_failure_threshold=1,
        control_plane_retries=2,
        control_plane_backoff_s=0.0,
        lease_ttl_s=60,
        image_repository="registry.example.com/shop/payments",
        enable_email=False,
    )
