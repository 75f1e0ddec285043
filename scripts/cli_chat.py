#!/usr/bin/env python3
import asyncio
import json
import os
import sys
from typing import Any, Dict, List

import httpx


API_URL = os.getenv("CHAT_API", "http://127.0.0.1:8000/v1/chat")


async def stream_chat(prompt: str, model: str = "", image_path: str = "") -> None:
    payload: Dict[str, Any] = {
        "messages": [{"role": "user", "content": prompt}],
        "stream": True,
    }
    if model:
        payload["model_override"] = model
    if image_path:
        import base64
        import mimetypes

        mime = mimetypes.guess_type(image_path)[0] or "image/png"
        with open(image_path, "rb") as f:
            payload["image"] = {"mime": mime, "base64": base64.b64encode(f.read()).decode()}

    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream("POST", API_URL, json=payload) as resp:
            if resp.status_code != 200:
                print(f"HTTP {resp.status_code}: {(await resp.aread()).decode('utf-8', 'replace')}")
                return
            buffer = b""
            async for chunk in resp.aiter_bytes():
                if not chunk:
                    continue
                buffer += chunk
                while b"\n\n" in buffer:
                    raw, buffer = buffer.split(b"\n\n", 1)
                    # Each SSE record is `event: <name>` + `data: <json>`; comments are keep-alives
                    etype = ""
                    data_lines: List[bytes] = []
                    for line in raw.split(b"\n"):
                        if line.startswith(b"event:"):
                            etype = line[len(b"event:"):].strip().decode()
                        elif line.startswith(b"data:"):
                            data_lines.append(line[len(b"data:"):].strip())
                    if not data_lines:
                        continue
                    try:
                        evt = json.loads(b"\n".join(data_lines))
                    except Exception:
                        continue
                    if etype == "meta":
                        print(f"[{evt.get('provider')}:{evt.get('model')}]")
                    elif etype == "delta":
                        sys.stdout.write(evt.get("text", ""))
                        sys.stdout.flush()
                    elif etype == "done":
                        reason = evt.get("finish_reason")
                        if reason == "error":
                            print(f"\n\n[error] {evt.get('error')}")
                        else:
                            print(f"\n\n[done] finish_reason={reason}")
                    else:
                        # Unknown events for debugging
                        print("\n[event]", etype, evt)


def main():
    if len(sys.argv) < 2:
        print("Usage: scripts/cli_chat.py 'your prompt here' [model-id] [image-path]")
        print("Example: scripts/cli_chat.py 'Describe this' openrouter:openai/gpt-4o-mini shot.png")
        return
    prompt = sys.argv[1]
    model = sys.argv[2] if len(sys.argv) >= 3 else ""
    image_path = sys.argv[3] if len(sys.argv) >= 4 else ""
    asyncio.run(stream_chat(prompt, model=model, image_path=image_path))


if __name__ == "__main__":
    main()
