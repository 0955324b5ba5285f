#!/usr/bin/env python3
import asyncio
import json
import os
import sys

import httpx


API_URL = os.getenv("CHAT_API", "http://127.0.0.1:8000/api/chat/stream")


async def stream_chat(message: str) -> None:
    payload = {"message": message}
    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream("POST", API_URL, json=payload) as resp:
            if resp.status_code != 200:
                print(f"HTTP {resp.status_code}: {(await resp.aread()).decode('utf-8', 'ignore')}")
                return
            buffer = b""
            async for chunk in resp.aiter_bytes():
                if not chunk:
                    continue
                buffer += chunk
                while b"\n\n" in buffer:
                    raw, buffer = buffer.split(b"\n\n", 1)
                    for line in raw.split(b"\n"):
                        if not line.startswith(b"data: "):
                            continue
                        try:
                            evt = json.loads(line[len(b"data: "):])
                        except json.JSONDecodeError:
                            continue
                        etype = evt.get("type")
                        if etype == "progress" and evt.get("status") in ("loading", "ready"):
                            sys.stderr.write(f"[model] {evt['status']}\n")
                        elif etype == "progress":
                            tps = evt.get("tps")
                            rate = f" ({tps:.1f} tok/s)" if tps else ""
                            sys.stderr.write(f"\r[generating] {evt.get('num_tokens', 0)} tokens{rate}")
                            sys.stderr.flush()
                        elif etype == "done":
                            sys.stderr.write("\n")
                            if evt.get("tool_name"):
                                print("[tool_call]", evt["tool_name"], json.dumps(evt.get("tool_arguments") or {}))
                            print(evt.get("response", ""))
                            print(f"\n[{evt.get('timing', '')}]")
                        elif etype == "error":
                            sys.stderr.write("\n")
                            print("[error]", evt.get("message"))
                        else:
                            print("\n[event]", evt)


def main():
    if len(sys.argv) < 2:
        print("Usage: scripts/cli_chat.py 'your message here'")
        print("Example: scripts/cli_chat.py 'What is sqrt(2) * 10?'")
        return
    asyncio.run(stream_chat(sys.argv[1]))


if __name__ == "__main__":
    main()
