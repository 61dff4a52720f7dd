from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from functools import lru_cache

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analysis_providers import ChatProviderError, OpenAIChatProvider
from .analysis_service import AnalysisError, AnalysisService
from .auth import AuthError, TokenVerifier, build_token_verifier, extract_bearer_token
from .config import AnalysisMode, Settings
from .tank_images import (
    TankImageLimitError,
    TankImageNotFoundError,
    TankImageStore,
    TankImageStoreError,
    TankImageValidationError,
    image_url,
    validate_upload,
)
from .tank_setups import (
    TankSetup,
    TankSetupNotFoundError,
    TankSetupStore,
    TankSetupStoreError,
    TankSetupValidationError,
)

load_dotenv()

logger = logging.getLogger(__name__)

START_TIME = time.monotonic()


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache
def get_analysis_service() -> AnalysisService:
    settings = get_settings()
    mode = settings.analysis_mode
    provider = OpenAIChatProvider.from_settings(settings) if mode is AnalysisMode.LIVE else None
    logger.info("Analysis service running in %s mode", mode.value)
    return AnalysisService(mode=mode, provider=provider)


@lru_cache
def get_tank_image_store() -> TankImageStore:
    return TankImageStore(root=get_settings().data_dir)


@lru_cache
def get_tank_setup_store() -> TankSetupStore:
    return TankSetupStore(root=get_settings().data_dir)


@lru_cache
def get_token_verifier() -> TokenVerifier:
    return build_token_verifier(get_settings())


def get_current_user_id(
    authorization: str | None = Header(default=None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> str:
    token = extract_bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Authorization required")
    try:
        return verifier.user_id_for(token)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc))


def get_optional_user_id(
    authorization: str | None = Header(default=None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> str | None:
    token = extract_bearer_token(authorization)
    if token is None:
        return None
    try:
        return verifier.user_id_for(token)
    except AuthError as exc:
        logger.warning("Ignoring invalid token on public endpoint: %s", exc)
        return None


_settings = get_settings()
logging.basicConfig(
    level=_settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="ReefAI Analysis Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(_settings.cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


class AnalyzeBody(BaseModel):
    tankDescription: str | None = None


class SpeciesBody(BaseModel):
    species: str
    quantity: int = 1


class WaterParamsBody(BaseModel):
    ph: float | None = None
    salinity: float | None = None
    temperature: float | None = None


class TankSetupBody(BaseModel):
    volume: float
    lighting: str
    filtration: list[str] = Field(default_factory=list)
    fish: list[SpeciesBody] = Field(default_factory=list)
    corals: list[SpeciesBody] = Field(default_factory=list)
    hasProteinSkimmer: bool = False
    hasHeater: bool = False
    hasWavemaker: bool = False
    waterParams: WaterParamsBody = Field(default_factory=WaterParamsBody)

    def to_setup(self) -> TankSetup:
        return TankSetup.from_dict(self.model_dump())


class AnalyzeSetupBody(TankSetupBody):
    setupId: str | None = None


class SaveTankSetupBody(BaseModel):
    name: str
    setup: TankSetupBody
    analysis: dict[str, object] | None = None


class AnalyzeSavedImageBody(BaseModel):
    imageId: str | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        return JSONResponse(
            status_code=404,
            content={"message": "Route not found", "status": "error", "path": request.url.path},
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "details": _validation_errors(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "message": str(exc)})


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()]


@app.get("/")
async def root():
    return {"message": "ReefAI analysis service is running", "status": "success", "timestamp": _now_iso()}


@app.get("/api/health")
async def health(service: AnalysisService = Depends(get_analysis_service)):
    return {
        "status": "healthy",
        "uptime": round(time.monotonic() - START_TIME, 3),
        "timestamp": _now_iso(),
        "mode": service.mode.value,
    }


@app.post("/api/analyze")
def analyze_description(
    body: AnalyzeBody,
    service: AnalysisService = Depends(get_analysis_service),
    user_id: str | None = Depends(get_optional_user_id),
):
    description = (body.tankDescription or "").strip()
    if not description:
        raise HTTPException(status_code=400, detail="tankDescription is required")
    logger.info("Text analysis requested (user=%s, %s chars)", user_id or "anonymous", len(description))
    try:
        return service.analyze_description(description)
    except AnalysisError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.post("/api/analyze-setup")
def analyze_setup(
    body: AnalyzeSetupBody,
    service: AnalysisService = Depends(get_analysis_service),
    setup_store: TankSetupStore = Depends(get_tank_setup_store),
    user_id: str | None = Depends(get_optional_user_id),
):
    try:
        analysis = service.analyze_setup(body.to_setup())
    except (TankSetupValidationError, AnalysisError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if user_id and body.setupId:
        try:
            setup_store.add_analysis(user_id=user_id, setup_id=body.setupId, analysis=analysis)
        except TankSetupNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
    return analysis


@app.post("/api/analyze-image")
def analyze_image(
    image: UploadFile | None = File(default=None),
    tankDescription: str = Form(default=""),
    service: AnalysisService = Depends(get_analysis_service),
):
    if image is None:
        raise HTTPException(status_code=400, detail="No image file provided")
    image_bytes = image.file.read()
    try:
        validate_upload(content_type=image.content_type, size=len(image_bytes))
    except TankImageValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        return service.analyze_image(
            image_bytes=image_bytes,
            content_type=image.content_type or "image/jpeg",
            context=tankDescription,
        )
    except AnalysisError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ChatProviderError as exc:
        logger.error("Image analysis failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/api/analyze-saved-image")
def analyze_saved_image(
    body: AnalyzeSavedImageBody,
    service: AnalysisService = Depends(get_analysis_service),
    image_store: TankImageStore = Depends(get_tank_image_store),
    user_id: str = Depends(get_current_user_id),
):
    if not body.imageId:
        raise HTTPException(status_code=400, detail="Image ID is required")
    try:
        record = image_store.get(user_id=user_id, image_id=body.imageId)
    except TankImageNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    cached = image_store.get_cached_analysis(user_id=user_id, image_id=record["id"])
    if cached is not None:
        logger.info("Returning cached analysis for image %s", record["id"])
        return {**cached, "cached": True}

    try:
        image_bytes = image_store.read_bytes(user_id=user_id, image_id=record["id"])
        analysis = service.analyze_image(
            image_bytes=image_bytes,
            content_type=record.get("content_type") or "image/jpeg",
            context=record.get("description"),
        )
    except (TankImageStoreError, AnalysisError, ChatProviderError) as exc:
        logger.error("Saved image analysis failed for %s: %s", record["id"], exc)
        raise HTTPException(status_code=500, detail=str(exc))

    try:
        image_store.save_analysis(user_id=user_id, image_id=record["id"], analysis=analysis)
    except (TankImageStoreError, OSError) as exc:
        logger.error("Failed to save analysis result for image %s: %s", record["id"], exc)
    return {**analysis, "cached": False}


@app.post("/api/upload-tank-image")
def upload_tank_image(
    image: UploadFile | None = File(default=None),
    description: str = Form(default=""),
    image_store: TankImageStore = Depends(get_tank_image_store),
    user_id: str = Depends(get_current_user_id),
):
    if image is None:
        raise HTTPException(status_code=400, detail="No image file provided")
    try:
        record = image_store.create(
            user_id=user_id,
            original_filename=image.filename,
            content_type=image.content_type,
            data=image.file.read(),
            description=description,
        )
    except (TankImageLimitError, TankImageValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TankImageStoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"success": True, "image": {**record, "url": image_url(record["id"])}}


@app.get("/api/user-tank-images")
async def list_user_tank_images(
    image_store: TankImageStore = Depends(get_tank_image_store),
    user_id: str = Depends(get_current_user_id),
):
    images = image_store.list_images(user_id=user_id)
    return {"images": images, "count": len(images), "maxImages": image_store.max_images}


@app.delete("/api/user-tank-images/{image_id}")
async def delete_user_tank_image(
    image_id: str,
    image_store: TankImageStore = Depends(get_tank_image_store),
    user_id: str = Depends(get_current_user_id),
):
    try:
        image_store.delete(user_id=user_id, image_id=image_id)
    except TankImageNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"success": True}


@app.get("/api/user-tank-images/{image_id}/file")
async def fetch_user_tank_image(
    image_id: str,
    image_store: TankImageStore = Depends(get_tank_image_store),
    user_id: str = Depends(get_current_user_id),
):
    try:
        record = image_store.get(user_id=user_id, image_id=image_id)
        file_path = image_store.file_path(user_id=user_id, image_id=image_id)
    except TankImageNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    if not file_path.exists():
        raise HTTPException(status_code=404, detail="Image file missing on disk")
    return FileResponse(file_path, media_type=record.get("content_type") or "image/jpeg")


@app.get("/api/tank-setups")
async def list_tank_setups(
    setup_store: TankSetupStore = Depends(get_tank_setup_store),
    user_id: str = Depends(get_current_user_id),
):
    return {"setups": [saved.to_dict() for saved in setup_store.list_setups(user_id=user_id)]}


@app.post("/api/tank-setups")
async def create_tank_setup(
    body: SaveTankSetupBody,
    setup_store: TankSetupStore = Depends(get_tank_setup_store),
    user_id: str = Depends(get_current_user_id),
):
    try:
        saved = setup_store.save(
            user_id=user_id,
            setup=body.setup.to_setup(),
            name=body.name,
            analysis=body.analysis,
        )
    except TankSetupValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TankSetupStoreError as exc:
        logger.error("Failed to save tank setup for user %s: %s", user_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return saved.to_dict()


@app.get("/api/tank-setups/{setup_id}")
async def get_tank_setup(
    setup_id: str,
    setup_store: TankSetupStore = Depends(get_tank_setup_store),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return setup_store.get(user_id=user_id, setup_id=setup_id).to_dict()
    except TankSetupNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@app.put("/api/tank-setups/{setup_id}")
async def update_tank_setup(
    setup_id: str,
    body: SaveTankSetupBody,
    setup_store: TankSetupStore = Depends(get_tank_setup_store),
    user_id: str = Depends(get_current_user_id),
):
    try:
        saved = setup_store.update(
            user_id=user_id,
            setup_id=setup_id,
            setup=body.setup.to_setup(),
            name=body.name,
            analysis=body.analysis,
        )
    except TankSetupNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except TankSetupValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TankSetupStoreError as exc:
        logger.error("Failed to update tank setup %s: %s", setup_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return saved.to_dict()


@app.delete("/api/tank-setups/{setup_id}")
async def delete_tank_setup(
    setup_id: str,
    setup_store: TankSetupStore = Depends(get_tank_setup_store),
    user_id: str = Depends(get_current_user_id),
):
    try:
        setup_store.delete(user_id=user_id, setup_id=setup_id)
    except TankSetupNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"success": True}


@app.get("/api/analysis-history")
async def get_analysis_history(
    setup_store: TankSetupStore = Depends(get_tank_setup_store),
    image_store: TankImageStore = Depends(get_tank_image_store),
    user_id: str = Depends(get_current_user_id),
):
    try:
        tank_analyses = setup_store.list_analyses(user_id=user_id)
        image_analyses = image_store.list_analyses(user_id=user_id)
    except (TankSetupStoreError, TankImageStoreError) as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {
        "tankAnalyses": tank_analyses,
        "imageAnalyses": image_analyses,
        "totalTankAnalyses": len(tank_analyses),
        "totalImageAnalyses": len(image_analyses),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("reefai.main:app", host="0.0.0.0", port=8000, reload=True)
