"""Allow running the orchestrator as a module: python -m taskflow."""

from taskflow.runner import main

if __name__ == "__main__":
    main()
