# =============================================================================
# Multi-Model Document QA Core
# =============================================================================
# Answers extraction questions about large documents with two or three
# independent LLM providers and reconciles their answers into one result
# with a calibrated confidence.
#
# Package structure:
#   docqa/
#   ├── config.py     → Settings (pydantic-settings) and per-component configs
#   ├── agents/       → Evaluator fan-out, arbitrator, prompt templates
#   ├── models/       → Pydantic V2 models (arbitration verdict, stats)
#   └── services/     → Admission control, chunking, consensus, normalization,
#                        provider adapters, token counting, error taxonomy
# =============================================================================
