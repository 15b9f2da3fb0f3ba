#!/usr/bin/env python3
"""
Stateful SSH MCP server.

Every host gets one persistent interactive shell, so `cd` and `export`
carry over between tool calls. Run `mcp-server.py cli` for a terminal.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ssh_liaison.main import main  # noqa: E402

if __name__ == "__main__":
    main()
