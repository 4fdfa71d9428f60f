# =============================================================================
# Services Package — Core Building Blocks
# =============================================================================
# Each module is usable on its own and receives its configuration by
# injection (no process-wide singletons):
#   - admission.py: Priority queue + sliding-window rate limits + circuit
#     breaker, one controller per provider
#   - chunker.py: Size-band chunking with boundary snapping, critical
#     section extraction and relevance scoring
#   - consensus.py: Agreement scoring, arbitration and confidence rules
#   - normalization.py: Per-type answer normalization (boolean, date,
#     number, text, json)
#   - llm.py: Provider protocol with Anthropic and OpenAI-compatible adapters
#   - tokens.py: tiktoken counts and character-based estimates
#   - exceptions.py: DocQAError hierarchy and transient-error classification
# =============================================================================
