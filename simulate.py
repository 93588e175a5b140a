"""
Drive a running StoryLoom server through a short writing session.

Creates a story, writes a few prose sections, forks a branch, customizes
the context blocks and prints the assembled context. Run the server first::

    uvicorn storyloom.main:app --port 8000
    python simulate.py
"""
import asyncio
import json

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

# Configuration
BASE_URL = "http://localhost:8000"


@retry(
    retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    reraise=True,
)
async def call(client: httpx.AsyncClient, method: str, path: str, **kwargs) -> dict:
    response = await client.request(method, path, **kwargs)
    # 409 is a version conflict on the story's timeline; retrying is safe
    if response.status_code == 409 or response.status_code >= 500:
        response.raise_for_status()
    if response.status_code >= 400:
        raise SystemExit(f"{method} {path} -> {response.status_code}: {response.text}")
    return response.json()


async def simulate_session():
    async with httpx.AsyncClient(base_url=BASE_URL, timeout=30.0) as client:
        story = await call(client, "POST", "/stories", json={
            "name": "The Lighthouse Keeper",
            "description": "A keeper on a remote island starts receiving letters from the sea.",
        })
        story_id = story["id"]
        print(f"[Story] {story_id}")

        await call(client, "POST", f"/stories/{story_id}/fragments", json={
            "type": "character", "name": "Maren", "description": "The keeper",
            "content": "Sixty, stubborn, keeps a logbook of every ship.", "sticky": True,
        })
        await call(client, "POST", f"/stories/{story_id}/fragments", json={
            "type": "guideline", "name": "Tone", "description": "Quiet, salt-worn",
            "content": "Short sentences. No exclamation marks.", "sticky": True, "placement": "system",
        })

        for text in (
            "The first letter came folded inside a mussel shell.",
            "Maren read it twice before she noticed it was addressed to her mother.",
            "By the third tide there were seven more.",
        ):
            prose = await call(client, "POST", f"/stories/{story_id}/fragments", json={
                "type": "prose", "content": text,
            })
            print(f"[Prose] {prose['id']}: {text}")

        branch = await call(client, "POST", f"/stories/{story_id}/branches", json={
            "name": "Burn the letters", "parentBranchId": "main", "forkAfterIndex": 1,
        })
        print(f"[Branch] {branch['id']} with {len(branch['entryIds'])} entries")

        await call(client, "POST", f"/stories/{story_id}/blocks/custom", json={
            "name": "Cast", "role": "user", "order": 350, "type": "script",
            "content": "return 'Cast: ' + ', '.join(c.name for c in ctx.sticky_characters)",
        })
        await call(client, "PATCH", f"/stories/{story_id}/blocks/config", json={
            "overrides": {"instructions": {"contentMode": "append", "customContent": "Keep it under 200 words."}},
        })

        context = await call(client, "POST", f"/stories/{story_id}/context", json={
            "author_input": "Maren burns the letters, then regrets it.",
        })
        for message in context["messages"]:
            print(f"\n===== {message['role'].upper()} =====\n{message['content']}")

        await asyncio.sleep(3)
        status = await call(client, "GET", f"/stories/{story_id}/librarian/status")
        print(f"\n[Librarian] {json.dumps(status)}")


if __name__ == "__main__":
    asyncio.run(simulate_session())
