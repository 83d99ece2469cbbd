import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .routers import admin, pesapal
from .db import init_db
from .config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # init db tables if not using migrations
    await init_db()
    yield


app = FastAPI(title="Pesapal Payment Verification Service", lifespan=lifespan)

# CORS - allow your app domain(s)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # change to your frontend domains in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pesapal.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "ok", "pesapalEnv": settings.pesapal_env}


if __name__ == "__main__":
    uvicorn.run("pesapal_service.main:app", host=settings.app_host, port=settings.app_port, reload=(settings.env != "production"))
