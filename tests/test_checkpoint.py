import torch
import torch.nn as nn

from inversion_pipeline import CheckpointStore


def test_save_and_load_roundtrip(tmp_path):
    store = CheckpointStore(str(tmp_path))
    torch.manual_seed(0)
    source = nn.Linear(4, 2)
    assert not store.exists("cfg a/stage_a")
    store.save("cfg a/stage_a", source.state_dict(), epsilon=1.5)
    assert store.exists("cfg a/stage_a")

    restored = nn.Linear(4, 2)
    checkpoint = store.load("cfg a/stage_a")
    restored.load_state_dict(checkpoint["model_state_dict"])
    assert checkpoint["meta"] == {"epsilon": 1.5}
    assert torch.equal(restored.weight, source.weight)
    assert torch.equal(restored.bias, source.bias)


def test_keys_map_to_flat_file_names(tmp_path):
    store = CheckpointStore(str(tmp_path))
    assert store.path("x/stage_a").endswith("x_stage_a.pt")
