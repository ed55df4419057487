"""
Entry point for running LLM Answer Collector as a module.

Enables execution via:
    python -m llm_answer_collector [command] [options]

This is equivalent to running the installed CLI:
    llm-answer-collector [command] [options]
"""

from llm_answer_collector.cli import app

if __name__ == "__main__":
    app()
