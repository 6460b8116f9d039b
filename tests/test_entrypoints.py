import json
from pathlib import Path

from riskml.common.io import load_env_config
from riskml.inference import entrypoint as eval_entrypoint
from riskml.training import entrypoint as train_entrypoint


def test_env_config_defaults_and_overrides(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("RISKML_STORAGE_ROOT", "RISKML_LOG_LEVEL", "RISKML_BUFFER_ROWS", "RISKML_PROGRESS_TTL"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_env_config()
    assert cfg["storage_root"] == "storage"
    assert cfg["buffer_memory_rows"] == 10_000

    monkeypatch.setenv("RISKML_BUFFER_ROWS", "25")
    monkeypatch.setenv("RISKML_STORAGE_ROOT", str(tmp_path / "elsewhere"))
    cfg = load_env_config()
    assert cfg["buffer_memory_rows"] == 25
    assert cfg["storage_root"] == str(tmp_path / "elsewhere")


def test_train_then_evaluate_from_command_line(tmp_path: Path, balanced_csv: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    store = tmp_path / "store"
    monkeypatch.setenv("RISKML_STORAGE_ROOT", str(store))

    hp_file = tmp_path / "hp.json"
    hp_file.write_text(json.dumps({"model_type": "decision_tree", "max_depth": 3}))
    train_entrypoint.main(["--dataset", str(balanced_csv), "--model_id", "city", "--hyperparameters", str(hp_file)])

    sidecars = sorted((store / "models" / "city").glob("*.json"))
    assert len(sidecars) == 1
    assert json.loads(sidecars[0].read_text())["model_type"] == "decision_tree"

    eval_entrypoint.main(["--dataset", str(balanced_csv), "--model_id", "city", "--plots_dir", str(tmp_path / "plots")])
    assert (tmp_path / "plots" / "city" / "confusion_matrix.png").is_file()
