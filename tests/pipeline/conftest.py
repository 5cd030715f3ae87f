import queue

import pytest

from astromesh.data import DataBuffer
from astromesh.io import write_image
from astromesh.pipeline.file_tracker import FileProcessingTracker
from astromesh.setup_directories import setup_output_directories


@pytest.fixture
def tracker(temp_dir):
    db_path = temp_dir / "tracker.db"
    with FileProcessingTracker(db_path) as t:
        yield t


@pytest.fixture
def pipeline_output_dirs(temp_dir):
    """Output directories for pipeline tests."""
    return setup_output_directories(temp_dir / "output")


@pytest.fixture
def make_pipeline_config(make_config, point_source_settings, pipeline_output_dirs):
    """Factory for point-source configs writing into ``pipeline_output_dirs``.

    Section dicts given as overrides are merged into the point-source ones.
    """
    def _make(**overrides):
        settings = dict(point_source_settings)
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(settings.get(key), dict):
                settings[key] = {**settings[key], **value}
            else:
                settings[key] = value
        settings.setdefault("BASE_DIR", str(pipeline_output_dirs["base"]))
        settings.setdefault("visualization", {"dpi": 60})
        config = make_config(**settings)
        return config.model_copy(update={
            "output_dirs": {k: str(v) for k, v in pipeline_output_dirs.items()},
            "run_id": "test_run",
        })

    return _make


@pytest.fixture
def pipeline_config(make_pipeline_config):
    return make_pipeline_config()


@pytest.fixture
def input_fits(temp_dir, point_source_image):
    """Point-source image written as the SCI extension of a FITS file."""
    path = temp_dir / "inputs" / "field_0001.fits"
    write_image(DataBuffer(point_source_image, name="SCI", unit="adu"), path)
    return path


# made for processor tests
@pytest.fixture
def processor_queues():
    return queue.Queue(), queue.Queue()
