import pytest

from topopt_state.core.config import ProblemConfig, load_config
from topopt_state.core.errors import ConfigurationError
from topopt_state.utils.io_utils import save_yaml


def test_defaults_are_valid():
    cfg = ProblemConfig().validate()
    assert cfg.to.filter == "linear"
    assert cfg.restart.on_incomplete == "abort"
    assert list(cfg.geometry.precedence) == ["fixed", "load", "solid", "design"]
    assert not cfg.projection


def test_from_dict_overrides_nested_values():
    cfg = ProblemConfig.from_dict({"mesh": {"resolution": [8, 4, 4]}, "to": {"volfrac": 0.3, "filter": "projection"}})
    assert cfg.mesh.resolution == [8, 4, 4]
    assert cfg.mesh.nlvls == 4
    assert cfg.to.volfrac == 0.3
    assert cfg.projection


def test_unknown_option_is_rejected():
    with pytest.raises(ConfigurationError, match="vol_frac"):
        ProblemConfig.from_dict({"to": {"vol_frac": 0.3}})
    with pytest.raises(ConfigurationError, match="solver"):
        ProblemConfig.from_dict({"solver": {}})


@pytest.mark.parametrize(
    "data, match",
    [
        ({"to": {"volfrac": 0.0}}, "volfrac"),
        ({"to": {"volfrac": 1.5}}, "volfrac"),
        ({"to": {"Xmin": 1.0, "Xmax": 1.0}}, "Xmin"),
        ({"to": {"movlim": 0.0}}, "movlim"),
        ({"to": {"filter": "sensitivity"}}, "filter"),
        ({"to": {"m": 0}}, "to.m"),
        ({"to": {"beta": 64.0, "beta_final": 48.0}}, "beta"),
        ({"mesh": {"resolution": [8, 0, 4]}}, "resolution"),
        ({"mesh": {"extent": [0, 1, 1, 1, 0, 1]}}, "extent"),
        ({"mesh": {"nlvls": 0}}, "nlvls"),
        ({"geometry": {"precedence": ["fixed", "design"]}}, "precedence"),
        ({"geometry": {"fixed_policy": "hollow"}}, "fixed_policy"),
        ({"restart": {"on_incomplete": "guess"}}, "on_incomplete"),
        ({"restart": {"interval": 0}}, "interval"),
        ({"run": {"backend": "threads"}}, "backend"),
        ({"material": {"E": 0.0}}, "material.E"),
        ({"material": {"nu": 0.5}}, "material.nu"),
        ({"material": {"Emin": 1.0, "Emax": 1.0}}, "Emin"),
        ({"geometry": {"load": ["a.stl"], "load_vectors": [[0, -1]]}}, "3 components"),
    ],
)
def test_invalid_options_raise(data, match):
    with pytest.raises(ConfigurationError, match=match):
        ProblemConfig.from_dict(data).validate()


def test_load_vectors_must_match_load_files():
    cfg = ProblemConfig.from_dict({"geometry": {"load": ["a.stl"], "load_vectors": [[0, 0, -1], [0, 0, 1]]}})
    with pytest.raises(ConfigurationError, match="load_vectors"):
        cfg.validate()


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "problem.yaml"
    save_yaml({"mesh": {"resolution": [16, 8, 8], "nlvls": 2}, "restart": {"enabled": True}}, path)
    cfg = load_config(path)
    assert cfg.mesh.resolution == [16, 8, 8]
    assert cfg.restart.enabled is True
    assert ProblemConfig.from_dict(cfg.to_dict()) == cfg


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(tmp_path / "missing.yaml")


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        ProblemConfig.from_dict({"to": {"volfrac": -1}}).validate()
