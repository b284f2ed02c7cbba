"""Configuration and chat-model access package.

Architectural role:
    Holds environment-driven configuration for every backend and the
    chat-completions helpers used for vision description and prompt
    enrichment.

Module split:
    - `provider_config`: environment-driven endpoints, defaults and key lookup.
    - `service`: chat payload construction for description and enrichment.
    - `client`: chat-completions transport and response parsing.
"""
