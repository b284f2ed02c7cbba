"""Image generation adapter package.

Scope:
    One adapter per backend family plus the dispatcher that selects between
    them:
    - `client`: HTTP transport, image payload type, single-call adapters.
    - `chat_client`: chat-model-mediated generation.
    - `local_client`: local Stable Diffusion (`txt2img`).
    - `poll_client`: submit-then-poll backends.
    - `custom_client`: best-effort matching of custom endpoint replies.
    - `service`: dispatcher returning `GenerationResult` values.

Non-goals:
    - No pixel-level image editing.
    - No automatic retries.
"""
