import os
import sys
import tempfile

# Ensure project root is in path
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, PROJECT_ROOT)

# Keep tests away from the real database and from any cloud project
os.environ["DUCKDB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="occlusion-tests-"), "test.duckdb")
os.environ.pop("PROJECT_ID", None)

import numpy as np
import pytest
from PIL import Image
from fastapi.testclient import TestClient
from app.main import app


@pytest.fixture
def client():
    """
    Test client for the FastAPI app.
    """
    return TestClient(app)


@pytest.fixture
def base_image():
    """224x224 RGB photo stand-in: a smooth gradient with no magenta pixels."""
    ramp = np.linspace(40, 200, 224, dtype=np.uint8)
    arr = np.zeros((224, 224, 3), dtype=np.uint8)
    arr[..., 0] = ramp[None, :]
    arr[..., 1] = ramp[:, None]
    arr[..., 2] = 90
    return Image.fromarray(arr)
