import sys
from pathlib import Path

import numpy as np
import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from vio_bootstrap import config
from vio_bootstrap.config import (
    AlignmentParams,
    ImuParams,
    InitializerParams,
    default_config,
    load_config,
)

REPO_ROOT = Path(__file__).resolve().parents[1]


def _write_yaml(tmp_path, data) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_default_config_matches_dataclass_defaults():
    cfg = default_config()
    assert ImuParams.from_config(cfg) == ImuParams()
    assert AlignmentParams.from_config(cfg) == AlignmentParams()
    assert InitializerParams.from_config(cfg) == InitializerParams()
    assert cfg['IMU_BUFFER_LENGTH_NS'] == int(20e9)
    np.testing.assert_array_equal(cfg['INITIAL_GYRO_BIAS'], np.zeros(3))
    assert cfg['VERBOSE_DEBUG'] is False


def test_shipped_default_config_loads():
    cfg = load_config(str(REPO_ROOT / "configs" / "config_default.yaml"))
    assert AlignmentParams.from_config(cfg) == AlignmentParams()
    assert ImuParams.from_config(cfg) == ImuParams()
    assert InitializerParams.from_config(cfg) == InitializerParams()


def test_partial_yaml_overrides_and_defaults(tmp_path):
    path = _write_yaml(tmp_path, {
        'imu': {'gyro_noise_density': 1e-3, 'initial_gyro_bias': [0.01, 0.0, -0.01]},
        'alignment': {'estimate_scale': True, 'min_rotation_deg': 10.0, 'max_iterations': 4},
        'initialization': {'window_size': 8},
    })
    cfg = load_config(path)
    assert cfg['IMU_PARAMS']['gyr_n'] == 1e-3
    assert cfg['IMU_PARAMS']['acc_n'] == config.IMU_PARAMS['acc_n']
    np.testing.assert_array_equal(cfg['INITIAL_GYRO_BIAS'], [0.01, 0.0, -0.01])

    align = AlignmentParams.from_config(cfg)
    assert align.estimate_scale is True
    assert align.max_iterations == 4
    assert align.min_rotation_rad == pytest.approx(np.radians(10.0))
    assert align.min_num_intervals == config.ALIGNMENT_MIN_NUM_INTERVALS
    assert InitializerParams.from_config(cfg).window_size == 8


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert AlignmentParams.from_config(load_config(str(path))) == AlignmentParams()


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_malformed_yaml_raises(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("imu: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_config(str(path))


def test_non_mapping_root_raises(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ValueError):
        load_config(str(path))


@pytest.mark.parametrize("data", [
    {'imu': {'g_norm': 0.0}},
    {'imu': {'gyro_noise_density': -1.0}},
    {'alignment': {'max_iterations': 0}},
    {'alignment': {'min_num_intervals': 1}},
    {'alignment': {'convergence_tolerance': 0.0}},
    {'initialization': {'window_size': 3}},
    {'initialization': {'imu_wait_timeout_s': -0.1}},
])
def test_invalid_values_raise(tmp_path, data):
    with pytest.raises(ValueError):
        load_config(_write_yaml(tmp_path, data))


def test_apply_verbosity(tmp_path):
    cfg = load_config(_write_yaml(tmp_path, {'debug': {'verbose': True}}))
    try:
        config.apply_verbosity(cfg)
        assert config.VERBOSE_DEBUG is True
    finally:
        config.apply_verbosity(default_config())
    assert config.VERBOSE_DEBUG is False


def test_gravity_magnitude_has_one_source(tmp_path):
    cfg = load_config(_write_yaml(tmp_path, {'imu': {'g_norm': 9.80665}}))
    assert AlignmentParams.from_config(cfg).gravity_magnitude == 9.80665
    assert not hasattr(ImuParams.from_config(cfg), 'gravity_magnitude')
