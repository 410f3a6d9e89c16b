"""
LLM Relay - OpenAI API compatible failover proxy.

A FastAPI-based application that exposes OpenAI-compatible chat completion
endpoints and dispatches each request to an ordered list of LLM backends
(Groq, Cerebras, Gemini, with OpenRouter as a last resort), failing over
until one of them answers.
"""

__version__ = "1.0.0"
__author__ = "LLM Relay Team"
