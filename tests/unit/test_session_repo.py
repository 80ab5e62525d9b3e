import asyncio
import pytest
from unittest.mock import MagicMock
from PIL import Image

from app.dal.session_repo import SessionRepository
from app.errors import AnalysisCancelledError
from app.services.occlusion_service import OcclusionService
from gateway_fakes import CellScoreGateway


@pytest.fixture
def repo():
    return SessionRepository(db=MagicMock())


def new_photo(repo, base_image, gateway):
    return repo.set_photo("session-1", base_image, base_image, "default", gateway.baseline)


def test_switching_class_cancels_running_analysis(repo, base_image):
    gateway = CellScoreGateway(label="cat")
    session = new_photo(repo, base_image, gateway)
    service = OcclusionService(gateway=gateway, max_concurrency=2)
    cat_token = repo.begin_analysis(session, "cat")
    tokens = {}

    def start_dog(n):
        if n == 10:
            tokens["dog"] = repo.begin_analysis(session, "dog")

    gateway.on_call = start_dog

    with pytest.raises(AnalysisCancelledError):
        asyncio.run(service.explain(base_image, "cat", session.baseline, session.context(), 224, cat_token))

    assert cat_token.cancelled
    assert not tokens["dog"].cancelled
    assert session.active_label == "dog"
    assert gateway.calls < 121


def test_same_class_reuses_running_token(repo, base_image):
    session = new_photo(repo, base_image, CellScoreGateway())
    token = repo.begin_analysis(session, "cat")
    assert repo.begin_analysis(session, "cat") is token
    assert not token.cancelled


def test_new_photo_cancels_analysis_of_old_one(repo, base_image):
    gateway = CellScoreGateway(label="cat")
    old = new_photo(repo, base_image, gateway)
    service = OcclusionService(gateway=gateway, max_concurrency=2)
    token = repo.begin_analysis(old, "cat")
    replaced = {}

    def upload_again(n):
        if n == 10:
            replaced["session"] = new_photo(repo, Image.new("RGB", (224, 224), "white"), gateway)

    gateway.on_call = upload_again

    async def scenario():
        return await old.cache.get_or_compute(
            "cat",
            lambda: service.explain(base_image, "cat", old.baseline, old.context(), 224, token)
        )

    with pytest.raises(AnalysisCancelledError):
        asyncio.run(scenario())

    assert token.cancelled
    current = repo.get("session-1")
    assert current is replaced["session"]
    assert current.photo_id != old.photo_id
    assert len(current.cache) == 0
    assert current.cache.get("cat") is None


def test_clear_cancels_running_analysis(repo, base_image):
    session = new_photo(repo, base_image, CellScoreGateway())
    token = repo.begin_analysis(session, "cat")
    repo.clear("session-1")
    assert token.cancelled
    assert repo.get("session-1") is None


def test_stale_request_does_not_cancel_newer_analysis(repo, base_image):
    session = new_photo(repo, base_image, CellScoreGateway())
    # A queued "cat" request arrived before the "dog" request that is now running
    queued_cat = repo.next_request(session)
    dog = repo.next_request(session)
    dog_token = repo.begin_analysis(session, "dog", dog)

    with pytest.raises(AnalysisCancelledError):
        repo.begin_analysis(session, "cat", queued_cat)

    assert not dog_token.cancelled
    assert session.active_label == "dog"


def test_finished_analysis_does_not_block_older_request(repo, base_image):
    session = new_photo(repo, base_image, CellScoreGateway())
    queued_cat = repo.next_request(session)
    dog = repo.next_request(session)
    dog_token = repo.begin_analysis(session, "dog", dog)
    repo.finish_analysis(session, dog_token)

    cat_token = repo.begin_analysis(session, "cat", queued_cat)

    assert not cat_token.cancelled
    assert session.active_label == "cat"


def test_progress_of_superseded_analysis_is_ignored(repo, base_image):
    session = new_photo(repo, base_image, CellScoreGateway())
    cat_token = repo.begin_analysis(session, "cat")
    repo.report_progress(session, cat_token, 40, 121)
    assert session.progress == (40, 121)

    dog_token = repo.begin_analysis(session, "dog")
    assert session.progress == (0, 0)

    # The cancelled run's remaining cells still report as they unwind
    repo.report_progress(session, cat_token, 41, 121)
    assert session.progress == (0, 0)
    repo.report_progress(session, dog_token, 3, 121)
    assert session.progress == (3, 121)
