"""
Tests for HuggingFace ecosystem integration.

Tests cover:
- Auto class registration
- Model serialization/deserialization
- Loading a base checkpoint into a head class
"""

import torch
from transformers import (
    AutoConfig,
    AutoModel,
    AutoModelForCausalLM,
    AutoModelForSequenceClassification,
    AutoModelForTokenClassification,
)

import phi3_core  # noqa: F401  registers the Auto classes
from phi3_core import Phi3Config, Phi3ForCausalLM, Phi3ForSequenceClassification, Phi3ForTokenClassification, Phi3Model


class TestAutoClasses:
    def test_auto_config(self):
        config = AutoConfig.for_model("phi3_core", hidden_size=64, num_attention_heads=4, num_blocks=2)
        assert isinstance(config, Phi3Config)
        assert config.num_blocks == 2

    def test_auto_models_from_config(self, tiny_config):
        assert isinstance(AutoModel.from_config(tiny_config), Phi3Model)
        assert isinstance(AutoModelForCausalLM.from_config(tiny_config), Phi3ForCausalLM)
        assert isinstance(AutoModelForSequenceClassification.from_config(tiny_config), Phi3ForSequenceClassification)
        assert isinstance(AutoModelForTokenClassification.from_config(tiny_config), Phi3ForTokenClassification)


class TestSerialization:
    def test_save_and_load_causal_lm(self, tmp_path, tiny_lm, sample_input_ids):
        tiny_lm.save_pretrained(tmp_path)
        loaded = AutoModelForCausalLM.from_pretrained(tmp_path).eval()

        assert isinstance(loaded, Phi3ForCausalLM)
        with torch.no_grad():
            expected = tiny_lm(sample_input_ids).logits
            actual = loaded(sample_input_ids).logits
        torch.testing.assert_close(actual, expected)

    def test_rotary_scaling_survives_round_trip(self, tmp_path, longrope_config):
        model = Phi3Model(longrope_config).eval()
        model.save_pretrained(tmp_path)
        loaded = Phi3Model.from_pretrained(tmp_path).eval()
        assert loaded.config.rotary_scaling == longrope_config.rotary_scaling

        input_ids = torch.randint(1, longrope_config.vocab_size, (1, 20))
        with torch.no_grad():
            torch.testing.assert_close(loaded(input_ids).last_hidden_state, model(input_ids).last_hidden_state)

    def test_base_checkpoint_into_head(self, tmp_path, tiny_model):
        tiny_model.save_pretrained(tmp_path)
        classifier = Phi3ForSequenceClassification.from_pretrained(tmp_path, num_labels=3)
        torch.testing.assert_close(
            classifier.model.embedder.token_embedding.weight,
            tiny_model.embedder.token_embedding.weight,
        )
        assert classifier.sequence_classification_head.output.out_features == 3
