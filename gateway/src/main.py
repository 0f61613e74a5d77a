from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from gateway.src.config import get_settings
from gateway.src.db.database import close_db, init_db
from gateway.src.routes import health_router, pipelines_router, webhooks_router

settings = get_settings()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    print("🚀 Starting Conveyor gateway")
    await init_db()
    yield
    # Shutdown
    print("👋 Shutting down Conveyor gateway")
    await close_db()

app = FastAPI(
    title="Conveyor",
    description="Declarative CI/CD pipeline orchestrator",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(pipelines_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "Conveyor",
        "version": "0.1.0",
        "docs": "/docs"
    }

def run():
    import uvicorn
    uvicorn.run("gateway.src.main:app", host=settings.api_host, port=settings.api_port)

if __name__ == "__main__":
    run()
