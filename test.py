"""
CHAT RELAY TEST SCRIPT - Interactive WebSocket client
=====================================================

PURPOSE:
This is a command-line test interface for a running chat relay server.
It sends each prompt over the WebSocket, prints the reply token by token as it
streams in, and keeps the history and chatId the way the browser client does.

WHY IT EXISTS:
- Provides an easy way to try the server without building a frontend
- Shows the wire protocol: text frames, then [END] and the chatId handshake
- Useful for development and debugging (image uploads, resuming saved chats)

USAGE:
    python test.py

    Make sure the server is running first: python run.py

COMMANDS:
    /image <path> - Upload an image; it is attached to your next message
    /chats        - List saved chats
    /open <id>    - Continue a saved chat
    /clear        - Start a new chat
    /quit or /exit - Exit the test interface
"""

import base64
import json
from pathlib import Path

import requests
from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect

try:
    from config import PORT
except ImportError:
    PORT = 3000


# -----------------------------------------------------------------------------
# CONFIGURATION
# -----------------------------------------------------------------------------
# Change these if your server runs on a different host or port.
BASE_URL = f"http://localhost:{PORT}"
WS_URL = f"ws://localhost:{PORT}/ws"

# Current chat: id from the last handshake, history sent with every turn,
# and an uploaded image waiting to be attached to the next message.
CHAT_ID = None
HISTORY = []
PENDING_IMAGE_URL = None


# -----------------------------------------------------------------------------
# UI HELPERS
# -----------------------------------------------------------------------------

def print_header():
    print("\n" + "=" * 60)
    print("Chat Relay - WebSocket test client")
    print("=" * 60)
    print("\nCommands:")
    print("  /image <path> - Attach an image to your next message")
    print("  /chats - List saved chats")
    print("  /open <id> - Continue a saved chat")
    print("  /clear - Start new chat")
    print("  /quit - Exit")
    print("=" * 60 + "\n")


def get_user_input():
    """Get user's input; None on Ctrl+C / Ctrl+D."""
    try:
        return input("\nYou: ").strip()
    except (KeyboardInterrupt, EOFError):
        return None


# -----------------------------------------------------------------------------
# HTTP CALLS
# -----------------------------------------------------------------------------

def upload_image(path):
    """Upload a local image file; return its URL or None (after printing why)."""
    file_path = Path(path).expanduser()
    if not file_path.is_file():
        print(f"❌ No such file: {file_path}")
        return None

    payload = base64.b64encode(file_path.read_bytes()).decode("ascii")
    try:
        response = requests.post(f"{BASE_URL}/api/upload-image", json={"base64": payload}, timeout=60)
    except requests.exceptions.ConnectionError:
        print("❌ Cannot connect to backend. Start it with: python run.py")
        return None

    if response.status_code != 200:
        print(f"❌ Upload failed: {response.status_code} - {response.text}")
        return None
    return response.json()["url"]


def list_chats():
    try:
        response = requests.get(f"{BASE_URL}/api/chats", timeout=10)
    except requests.exceptions.ConnectionError:
        return "❌ Cannot connect to backend. Start it with: python run.py"
    if response.status_code != 200:
        return f"❌ Error: {response.status_code} - {response.text}"

    chats = response.json()
    if not chats:
        return "No saved chats"
    lines = [f"\n📜 Saved chats ({len(chats)}):", "-" * 60]
    for chat in chats:
        lines.append(f"{chat['id']}  {chat['createdAt'][:19]}  {chat['title']}")
    lines.append("-" * 60)
    return "\n".join(lines)


def open_chat(chat_id):
    """Load a saved chat so the next message continues it."""
    global CHAT_ID, HISTORY
    try:
        response = requests.get(f"{BASE_URL}/api/chats/{chat_id}", timeout=10)
    except requests.exceptions.ConnectionError:
        return "❌ Cannot connect to backend. Start it with: python run.py"
    if response.status_code == 404:
        return f"❌ Chat not found: {chat_id}"
    if response.status_code != 200:
        return f"❌ Error: {response.status_code} - {response.text}"

    chat = response.json()
    CHAT_ID = chat["id"]
    HISTORY = chat["messages"]
    return f"✅ Continuing '{chat['title']}' ({len(HISTORY)} messages)"


# -----------------------------------------------------------------------------
# WEBSOCKET TURN
# -----------------------------------------------------------------------------

def send_turn(ws, prompt):
    """
    Send one turn and print the streamed reply.

    Frames arrive as: raw text tokens, then [END] and a JSON handshake with
    the chatId, or [ERROR]. A JSON frame with an "error" key before [ERROR]
    explains why the message was rejected.
    """
    global CHAT_ID, PENDING_IMAGE_URL

    user_turn = {"role": "user", "content": prompt, "imageUrl": PENDING_IMAGE_URL}
    ws.send(json.dumps({
        "prompt": prompt,
        "imageUrl": PENDING_IMAGE_URL,
        "chatId": CHAT_ID,
        "history": HISTORY,
    }))

    reply = []
    print("🤖 Assistant: ", end="", flush=True)
    while True:
        frame = ws.recv()
        if frame == "[END]":
            handshake = json.loads(ws.recv())
            CHAT_ID = handshake.get("chatId", CHAT_ID)
            HISTORY.append(user_turn)
            HISTORY.append({"role": "assistant", "content": "".join(reply), "imageUrl": None})
            PENDING_IMAGE_URL = None
            print()
            return
        if frame == "[ERROR]":
            print("\n❌ The server could not complete this turn.")
            return
        if frame.startswith("{") and '"error"' in frame:
            print(f"\n❌ {json.loads(frame).get('detail')}")
            continue
        reply.append(frame)
        print(frame, end="", flush=True)


# -----------------------------------------------------------------------------
# MAIN LOOP
# -----------------------------------------------------------------------------

def main():
    """Connect once, then read messages and commands until /quit or /exit."""
    global CHAT_ID, HISTORY, PENDING_IMAGE_URL
    print_header()

    try:
        ws = connect(WS_URL)
    except OSError:
        print("❌ Cannot connect to backend. Start it with: python run.py")
        return

    with ws:
        while True:
            user_input = get_user_input()
            if user_input is None or user_input in ["/quit", "/exit"]:
                print("\n👋 Goodbye!")
                break

            if user_input.startswith("/image "):
                PENDING_IMAGE_URL = upload_image(user_input[len("/image "):].strip())
                if PENDING_IMAGE_URL:
                    print(f"🖼️  Attached {PENDING_IMAGE_URL} to your next message")
                continue
            elif user_input == "/chats":
                print(list_chats())
                continue
            elif user_input.startswith("/open "):
                print(open_chat(user_input[len("/open "):].strip()))
                continue
            elif user_input == "/clear":
                CHAT_ID, HISTORY, PENDING_IMAGE_URL = None, [], None
                print("\n🔄 New chat. Starting fresh!")
                continue
            elif user_input.startswith("/"):
                print(f"❌ Unknown command: {user_input}")
                continue

            if not user_input and not PENDING_IMAGE_URL:
                continue

            try:
                send_turn(ws, user_input)
            except ConnectionClosed:
                print("\n❌ Connection closed by the server.")
                break


# Run the interactive loop when this file is executed (python test.py).
if __name__ == "__main__":
    main()
