import pytest

from fakes import FakeAIService, FakeBlobStore, FakeRecordStore
from pipeline.config import PipelineConfig
from pipeline.schema import ProcessedImage


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def ai():
    return FakeAIService()


@pytest.fixture
def config():
    return PipelineConfig(redis_url="redis://localhost:6379/0", queue_name="test-sheets")


@pytest.fixture
def processed_image():
    return ProcessedImage(data=b"\x89PNG\r\n\x1a\nfake", mime_type="image/png")
