"""Chat Gateway Layer.

Provides async infrastructure for multi-provider LLM conversations with:
  - Sliding-window Rate Limiter (per caller tier, shared store)
  - Conversation History (TTL'd log with durable fallback)
  - Context Manager (token-budgeted truncation)
  - Response Cache (fingerprinted, single-flight)
  - Provider Adapters (OpenAI, Anthropic; sync and streaming)
  - Circuit Breaker and Response Normalizer
"""
