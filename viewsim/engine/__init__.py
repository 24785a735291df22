"""viewsim decision engine.

Modular, protocol-based architecture:
- types.py: Core data types, stream events, protocol interfaces
- llm_client.py: Streaming tool-call client with model fallback (httpx)
- arguments.py: Robust decision-argument extraction + tool inference
- double_quit.py: Double-quit leniency state machine
- persona.py: Viewer personas, decision framework prompt, tool definitions
- agent_runner.py: Per-agent sequential decision loop
- orchestrator.py: Runs all agents concurrently and summarizes
"""
