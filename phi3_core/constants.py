# Phi-3 Core Constants
# ================================

# Default model configuration values
DEFAULT_VOCAB_SIZE = 51200        # Token embedding rows
DEFAULT_MAX_POSITIONS = 2048      # Maximum sequence length
DEFAULT_HIDDEN_SIZE = 2048        # Residual stream width
DEFAULT_INTERMEDIATE_SIZE = 8192  # Gated FFN width
DEFAULT_NUM_BLOCKS = 24           # Number of transformer blocks
DEFAULT_NUM_ATTENTION_HEADS = 32  # Query heads per attention layer
DEFAULT_ACTIVATION = "gelu_approx_tanh"
DEFAULT_ROTARY_BASE = 10000.0
DEFAULT_LAYER_NORM_EPSILON = 1e-12
DEFAULT_PAD_TOKEN_ID = 32000

# Weight initialization standard deviation
DEFAULT_INITIALIZER_SCALE = 0.02

# Dropout in front of the token classification projection
DEFAULT_CLASSIFIER_DROPOUT = 0.1

# Activation names that differ from transformers.activations.ACT2FN keys
ACTIVATION_ALIASES = {
    "gelu_approx_tanh": "gelu_pytorch_tanh",
    "swish": "silu",
}

# rope_scaling "type" values accepted as LongRoPE in checkpoint configs
LONGROPE_TYPES = ("longrope", "su", "yarn")
