import sys
import torch
import pytest
from pathlib import Path

# Ensure project root is on sys.path for package imports during pytest runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from phi3_core.configuration_phi3 import Phi3Config
from phi3_core.model import Phi3Model
from phi3_core.modeling_phi3 import Phi3ForCausalLM


@pytest.fixture(scope="session", autouse=True)
def set_test_seeds():
    """Set seeds for reproducible tests across the session."""
    torch.manual_seed(42)
    torch.cuda.manual_seed_all(42)


@pytest.fixture
def device():
    """Get available device for testing."""
    return torch.device('cuda' if torch.cuda.is_available() else 'cpu')


@pytest.fixture
def tiny_config():
    """Create a tiny config for fast testing."""
    return Phi3Config.from_preset("tiny")


@pytest.fixture
def window_config():
    """Tiny config with a short sliding window."""
    return Phi3Config.from_preset("tiny", attention_window_size=3)


@pytest.fixture
def longrope_config():
    """Tiny config with LongRoPE scaling and partial rotary encoding."""
    # head_dim 16 x 0.5 -> rotary_dim 8 -> 4 factors
    return Phi3Config.from_preset(
        "tiny",
        rotary_embedding_percentage=0.5,
        rotary_embedding_scaling_strategy={
            "type": "longrope",
            "short_factor": [1.0] * 4,
            "long_factor": [4.0] * 4,
            "original_max_positions": 16,
        },
    )


@pytest.fixture
def tiny_model(tiny_config):
    """Tiny base model in eval mode."""
    model = Phi3Model(tiny_config)
    model.eval()
    return model


@pytest.fixture
def tiny_lm(tiny_config):
    """Tiny causal LM in eval mode."""
    model = Phi3ForCausalLM(tiny_config)
    model.eval()
    return model


@pytest.fixture
def sample_input_ids(tiny_config):
    """Random token ids avoiding the pad token."""
    return torch.randint(1, tiny_config.vocab_size, (2, 10))


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "gpu: marks tests that require a CUDA device")
