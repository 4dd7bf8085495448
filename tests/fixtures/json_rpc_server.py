"""Scriptable stdio tool server for transport and protocol tests.

Usage: python json_rpc_server.py [MODE]

Modes:
    normal            well-behaved server (default)
    noisy             also prints non-JSON lines, notifications and a ping
    crash-on-call     exits with status 3 on the first tools/call
    exit-immediately  exits with status 1 before reading anything
    hang              answers the handshake, never answers tools/call
    bad-protocol      answers initialize with an unsupported version
    stubborn          like hang, and ignores stdin EOF and SIGTERM

Tools (normal/noisy): echo(text), add(a, b), fail(), sleep(seconds, text),
state(). tools/list is served in two pages to exercise pagination.
"""
import json
import signal
import sys
import threading
import time

MODE = sys.argv[1] if len(sys.argv) > 1 else "normal"

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the text back",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "add",
        "description": "Add two numbers",
        "inputSchema": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        },
    },
    {"name": "fail", "description": "Always reports an error"},
    {
        "name": "sleep",
        "description": "Wait, then echo",
        "inputSchema": {
            "type": "object",
            "properties": {"seconds": {"type": "number"}, "text": {"type": "string"}},
        },
    },
    {"name": "state", "description": "Report handshake state"},
]

_write_lock = threading.Lock()
_state = {"initialized": False, "pong": False, "pid": None}


def send(message):
    with _write_lock:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()


def noise():
    if MODE == "noisy":
        with _write_lock:
            sys.stdout.write("this line is not json\n")
            sys.stdout.flush()
        send({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})


def text_result(request_id, text, is_error=False):
    result = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    send({"jsonrpc": "2.0", "id": request_id, "result": result})


def handle_call(request_id, params):
    name = params.get("name")
    args = params.get("arguments") or {}
    if MODE == "crash-on-call":
        sys.exit(3)
    if MODE in ("hang", "stubborn"):
        return
    if name == "echo":
        text_result(request_id, str(args.get("text", "")))
    elif name == "add":
        text_result(request_id, str(args.get("a", 0) + args.get("b", 0)))
    elif name == "fail":
        text_result(request_id, "something broke", is_error=True)
    elif name == "sleep":
        def later():
            time.sleep(float(args.get("seconds", 0)))
            text_result(request_id, str(args.get("text", "")))
        threading.Thread(target=later, daemon=True).start()
    elif name == "state":
        text_result(request_id, json.dumps(_state))
    else:
        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": -32602, "message": f"Unknown tool: {name}"},
        })


def handle(message):
    method = message.get("method")
    request_id = message.get("id")

    if method is None:
        # Response to our ping.
        if request_id == "srv-ping" and message.get("result") == {}:
            _state["pong"] = True
        return

    if method == "initialize":
        version = "1999-01-01" if MODE == "bad-protocol" else "2025-06-18"
        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {
                "protocolVersion": version,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fixture", "version": "1.0"},
            },
        })
    elif method == "notifications/initialized":
        _state["initialized"] = True
        if MODE == "noisy":
            send({"jsonrpc": "2.0", "id": "srv-ping", "method": "ping"})
    elif method == "tools/list":
        noise()
        cursor = (message.get("params") or {}).get("cursor")
        if cursor is None:
            result = {"tools": TOOLS[:2], "nextCursor": "page-2"}
        else:
            result = {"tools": TOOLS[2:]}
        send({"jsonrpc": "2.0", "id": request_id, "result": result})
    elif method == "tools/call":
        noise()
        handle_call(request_id, message.get("params") or {})
    elif request_id is not None:
        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": -32601, "message": f"Method not found: {method}"},
        })


def main():
    if MODE == "exit-immediately":
        sys.exit(1)
    if MODE == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        handle(json.loads(line))

    if MODE == "stubborn":
        while True:
            time.sleep(1)


if __name__ == "__main__":
    main()
