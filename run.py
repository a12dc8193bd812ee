"""
RUN SCRIPT - Start the chat relay server
========================================

PURPOSE:
  Single entry point to start the backend: the chat WebSocket plus the
  upload/chat-list HTTP API, on one port.

WHAT IT DOES:
  - Imports the FastAPI app from chatstream.main.
  - Runs it with uvicorn on HOST:PORT from config.py (default 0.0.0.0:3000).
  - reload=True means any change to Python files will restart the server (handy for development).

USAGE:
  python run.py

  WebSocket: ws://localhost:3000/ws
  API docs:  http://localhost:3000/docs

NOTE:
  Before running, set OPENAI_API_KEY (or LLM_PROVIDER=groq and GROQ_API_KEY) in .env.
"""

import uvicorn

from config import HOST, PORT

# ------------------------------------------------------------------------------
# ENTRY POINT
# ------------------------------------------------------------------------------
if __name__ == "__main__":
    uvicorn.run(
        "chatstream.main:app",   # String path to the FastAPI app instance (module:variable).
        host=HOST,               # 0.0.0.0 by default so other devices can connect.
        port=PORT,               # 3000 by default; set PORT in .env to change.
        reload=True              # Auto-restart when .py files change (useful during development).
    )
