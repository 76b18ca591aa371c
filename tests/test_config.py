from __future__ import annotations

import pytest
import structlog

from compactstudy.config.runtime import CONFIG_FILENAME, RuntimeConfig, load_runtime_config
from compactstudy.config.settings import Settings
from compactstudy.core.layout_config import CompactLayoutConfig, merge_layout_config, standard_layout_config
from compactstudy.core.layout_engine import CompactLayoutEngine
from compactstudy.core.logging_setup import configure_from_settings, get_logger
from compactstudy.exceptions import LayoutError


def test_missing_config_file_gives_defaults(tmp_path):
    runtime = load_runtime_config(tmp_path, env=Settings())
    assert runtime.pipeline.max_concurrent_stages == 3
    assert runtime.validation.formula_preservation_threshold == pytest.approx(0.85)
    assert runtime.layout_config() == CompactLayoutConfig()


def test_yaml_sections_are_loaded(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text(
        "pipeline:\n"
        "  max_concurrent_stages: 2\n"
        "  retry_delay_ms: 0\n"
        "cross_references:\n"
        "  max_distance: 5\n"
        "layout:\n"
        "  columns: 3\n"
        "  typography:\n"
        "    font_size: 9.5\n",
        encoding="utf-8",
    )
    runtime = load_runtime_config(tmp_path, env=Settings())

    assert runtime.pipeline.max_concurrent_stages == 2
    assert runtime.pipeline.retry_delay_ms == 0
    assert runtime.cross_references.max_distance == 5
    layout = runtime.layout_config()
    assert layout.columns == 3
    assert layout.typography.font_size == pytest.approx(9.5)
    assert layout.typography.line_height == pytest.approx(1.2)


def test_environment_settings_override_yaml(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text("pipeline:\n  timeout_ms: 1000\n", encoding="utf-8")
    env = Settings(timeout_ms=1234, strict_validation=True, memory_threshold_mb=64)

    runtime = load_runtime_config(tmp_path, env=env)

    assert runtime.pipeline.timeout_ms == 1234
    assert runtime.validation.strict_mode is True
    assert runtime.performance.memory_threshold_mb == pytest.approx(64)


def test_settings_normalize_log_level():
    assert Settings(log_level="debug").log_level == "DEBUG"
    assert Settings(timeout_ms=5, max_concurrent_documents=2).runtime_overrides() == {
        "pipeline": {"timeout_ms": 5},
        "performance": {"max_concurrent_documents": 2},
    }


def test_unknown_layout_option_is_rejected():
    with pytest.raises(LayoutError) as excinfo:
        merge_layout_config(CompactLayoutConfig(), {"spacing": {"gutter": 1}})
    assert excinfo.value.code == "INVALID_CONFIG"


@pytest.mark.parametrize(
    "overrides",
    [
        {"typography": {"font_size": 16}},
        {"typography": {"line_height": 2.5}},
        {"spacing": {"paragraph_spacing": 0.5}},
        {"spacing": {"list_spacing": 0.3}},
        {"columns": 4},
        {"margins": {"left": 4.2, "right": 4.2}},
    ],
)
def test_out_of_range_layout_values_are_rejected(overrides):
    with pytest.raises(LayoutError):
        merge_layout_config(CompactLayoutConfig(), overrides)


def test_invalid_layout_override_surfaces_when_building(tmp_path):
    runtime = RuntimeConfig.model_validate({"layout": {"overrides": {"columns": 0}}})
    with pytest.raises(LayoutError):
        runtime.layout_config()


def test_standard_layout_is_a_measurement_baseline_only():
    with pytest.raises(LayoutError):
        CompactLayoutEngine(standard_layout_config())


def test_logging_is_configured_from_settings(capsys):
    try:
        configure_from_settings(Settings(log_level="warning", log_format="json"))
        assert structlog.is_configured()
        log = get_logger("compactstudy.test")
        log.info("hidden_event")
        log.warning("shown_event", stage="file-processing")
        out = capsys.readouterr().out
        assert "hidden_event" not in out
        assert '"event": "shown_event"' in out
        assert '"stage": "file-processing"' in out
    finally:
        structlog.reset_defaults()
