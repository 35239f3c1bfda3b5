"""
FastAPI server for mdx-split
Accepts audio and returns the vocal and instrumental stems as base64 WAV.
"""

import base64
import binascii
import logging

import onnxruntime as ort
import uvicorn
from fastapi import FastAPI, File, HTTPException, UploadFile
from pydantic import BaseModel

from .exceptions import DecodeFailure, DownloadFailure, InferenceFailure, ModelLoadFailure
from .mdx_lib import SAMPLE_RATE
from .progress import JobState
from .separator import Separator

logger = logging.getLogger(__name__)

app = FastAPI(
    title="mdx-split API",
    description="Vocal / instrumental separation with the MDX-Net model",
    version="1.0.0",
)

separator = None


class SeparateBase64Request(BaseModel):
    audio_data: str


class SeparateResponse(BaseModel):
    success: bool
    vocals: str
    instrumental: str
    sample_rate: int


@app.on_event("startup")
async def startup_event():
    """Initialize the separator on startup."""
    global separator

    logger.info("Starting mdx-split API server...")
    if separator is None:
        separator = Separator()
    logger.info("Server started.")


def get_separator():
    if separator is None:
        raise HTTPException(status_code=503, detail="Separator is not initialized")
    return separator


ERROR_STATUS = {
    DecodeFailure: 400,
    DownloadFailure: 503,
    ModelLoadFailure: 503,
    InferenceFailure: 500,
}


def _error_status(error):
    return ERROR_STATUS.get(type(error), 500)


async def _separate(audio_bytes):
    if not audio_bytes:
        raise HTTPException(status_code=400, detail="Audio data is empty")

    result = await get_separator().separate(audio_bytes)
    if result.state is not JobState.DONE:
        logger.error(f"Separation ended in state {result.state.value}: {result.error}")
        raise HTTPException(
            status_code=_error_status(result.error),
            detail=f"Separation failed: {result.error}",
        )

    return SeparateResponse(
        success=True,
        vocals=base64.b64encode(result.vocals).decode("utf-8"),
        instrumental=base64.b64encode(result.instrumental).decode("utf-8"),
        sample_rate=SAMPLE_RATE,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "mdx-split API Server",
        "version": "1.0.0",
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    current = get_separator()
    return {
        "status": "healthy",
        "model_loaded": current.gateway.is_loaded(),
        "providers": current.gateway.providers or [],
        "onnxruntime_version": ort.__version__,
    }


@app.post("/separate", response_model=SeparateResponse)
async def separate_upload(audio_file: UploadFile = File(...)):
    """
    Separate an uploaded audio file.

    Args:
        audio_file: Audio file to process

    Returns:
        SeparateResponse with base64 encoded vocal and instrumental WAV files
    """
    if audio_file.content_type and not audio_file.content_type.startswith("audio/"):
        raise HTTPException(status_code=400, detail="File must be an audio file")

    content = await audio_file.read()
    logger.info(f"Separating upload {audio_file.filename} ({len(content)} bytes)")
    return await _separate(content)


@app.post("/separate_base64", response_model=SeparateResponse)
async def separate_base64(request: SeparateBase64Request):
    """
    Separate base64 encoded audio.

    Args:
        request: JSON body with audio_data

    Returns:
        SeparateResponse with base64 encoded vocal and instrumental WAV files
    """
    try:
        audio_bytes = base64.b64decode(request.audio_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Failed to decode audio data: {e}")

    return await _separate(audio_bytes)


def main():
    uvicorn.run(
        "mdx_split.api_server:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
