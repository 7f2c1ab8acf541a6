"""Agent Procs 入口点。

支持: python -m agent_procs
"""

from .app import main

if __name__ == "__main__":
    main()
