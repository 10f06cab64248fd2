"""Research engine - multi-provider research pipeline orchestration.

Runs an evidence-gathering research pipeline against independent LLM
providers per session:
- Fixed 8-stage workflow with a bounded gap-check loop
- Resumable, poll-driven execution with durable per-step state
- Cross-provider citation normalization
"""

__version__ = "0.1.0"
