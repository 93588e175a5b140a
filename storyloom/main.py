from dotenv import load_dotenv
load_dotenv()

from storyloom.utils.logging_config import setup_logging
setup_logging()

from storyloom.app import app
from storyloom.routers import blocks, branches, fragments, librarian, prose, stories

app.include_router(stories.router)
app.include_router(fragments.router)
app.include_router(branches.router)
app.include_router(prose.router)
app.include_router(blocks.router)
app.include_router(librarian.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storyloom.main:app", host="0.0.0.0", port=8000)
