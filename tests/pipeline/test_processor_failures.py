import queue

import numpy as np
import pandas as pd
import pytest

from astromesh.contracts import ContractViolation, FailurePolicy
from astromesh.io import write_image, write_table
from astromesh.pipeline.processor import ImageProcessor

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]


@pytest.fixture
def make_processor(pipeline_output_dirs, tracker):
    created = []

    def _make(config, **kwargs):
        proc = ImageProcessor(queue.Queue(), config, pipeline_output_dirs,
                              file_tracker=tracker, **kwargs)
        created.append(proc)
        return proc

    yield _make
    for proc in created:
        proc.close_database()


def _status(tracker, file_id):
    return tracker.get_file_status(file_id)


def _raising(exc):
    def fn(*args, **kwargs):
        raise exc
    return fn


def test_missing_file(make_processor, pipeline_config, tracker, temp_dir):
    path = temp_dir / "absent.fits"
    tracker.register_file("absent", path)
    proc = make_processor(pipeline_config)

    assert proc.process_file(path) is False
    status = _status(tracker, "absent")
    assert status["status"] == "failed"
    assert status["error_message"].startswith("MisconfigurationError")
    assert not proc.stopped()


def test_table_only_file(make_processor, pipeline_config, tracker, temp_dir):
    path = temp_dir / "table.fits"
    write_table(pd.DataFrame({"a": [1, 2]}), path, "TAB")
    tracker.register_file("table", path)

    assert make_processor(pipeline_config).process_file(path) is False
    assert "not an image HDU" in _status(tracker, "table")["error_message"]


def test_too_few_noise_detections(make_processor, make_pipeline_config, tracker, input_fits):
    config = make_pipeline_config(detection={"min_num_noise": 100000})
    tracker.register_file("field_0001", input_fits)

    assert make_processor(config).process_file(input_fits) is False
    assert _status(tracker, "field_0001")["error_message"].startswith("InsufficientNoiseError")


def test_wrong_kernel_dimensions(make_processor, make_pipeline_config, tracker, temp_dir,
                                 input_fits):
    kernel_path = temp_dir / "kernel.fits"
    write_image(np.full((3, 3, 3), 1 / 27), kernel_path, extname="KERNEL")
    config = make_pipeline_config(KERNEL_FILE=str(kernel_path))
    tracker.register_file("field_0001", input_fits)

    assert make_processor(config).process_file(input_fits) is False
    assert "Kernel has 3 dims" in _status(tracker, "field_0001")["error_message"]


def test_contract_violation_fail_fast(make_processor, pipeline_config, tracker, input_fits,
                                      monkeypatch):
    proc = make_processor(pipeline_config)

    monkeypatch.setattr(proc, "analyze", _raising(ContractViolation("labels not consecutive")))
    tracker.register_file("field_0001", input_fits)

    assert proc.process_file(input_fits) is False
    assert proc.stopped()
    assert _status(tracker, "field_0001")["error_message"] == \
        "Contract violation: labels not consecutive"


def test_contract_violation_skip_file(make_processor, pipeline_config, input_fits,
                                      monkeypatch):
    proc = make_processor(pipeline_config, failure_policy=FailurePolicy.SKIP_FILE)
    monkeypatch.setattr(proc, "analyze", _raising(ContractViolation("bad")))

    assert proc.process_file(input_fits) is False
    assert not proc.stopped()


def test_unexpected_error_recorded(make_processor, pipeline_config, tracker, input_fits,
                                   monkeypatch):
    proc = make_processor(pipeline_config)

    monkeypatch.setattr(proc, "write_products", _raising(KeyError("boom")))
    tracker.register_file("field_0001", input_fits)

    assert proc.process_file(input_fits) is False
    assert "boom" in _status(tracker, "field_0001")["error_message"]
    assert not proc.stopped()


def test_run_loop_counts_failures(make_processor, pipeline_config, input_fits, temp_dir):
    proc = make_processor(pipeline_config, failure_policy="skip_file")
    proc.input_queue.put(str(temp_dir / "absent.fits"))
    proc.input_queue.put(str(input_fits))
    proc.input_queue.put(None)
    proc.start()
    proc.join(timeout=120)

    assert (proc.num_succeeded, proc.num_failed) == (1, 1)
