"""
SheetCalc API Server - FastAPI Backend for the Sheet Editor
Provides REST API and WebSocket endpoints that evaluate whole sheets.
"""

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, model_validator

from constants import (
    APP_NAME, APP_VERSION, CURRENCY_SYMBOLS, CURRENCY_DISPLAY, FUNCTION_NAMES,
    DEFAULT_HOST, DEFAULT_PORT, HOST_ENV, PORT_ENV
)
from currency_rates import load_rates
from expression_evaluator import ExpressionEvaluator
from sheet_engine import SheetEvaluator, LineResult, split_lines

logger = logging.getLogger(__name__)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class EvaluateRequest(BaseModel):
    lines: Optional[List[str]] = None
    content: Optional[str] = None

    @model_validator(mode="after")
    def _require_lines_or_content(self):
        if self.lines is None and self.content is None:
            raise ValueError("either 'lines' or 'content' is required")
        return self

    def sheet_lines(self) -> List[str]:
        if self.lines is not None:
            return self.lines
        return split_lines(self.content)


class CalculationRequest(BaseModel):
    expression: str


class LineResultResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    value: Any = None
    formatted: str = ""
    error: Optional[str] = None
    variable: Optional[str] = None
    is_assignment: bool = Field(False, alias="isAssignment")

    @classmethod
    def from_result(cls, result: LineResult):
        return cls(**result.to_dict())


class EvaluateResponse(BaseModel):
    results: List[LineResultResponse]


# =============================================================================
# FASTAPI APPLICATION SETUP
# =============================================================================

app = FastAPI(
    title=f"{APP_NAME} API",
    description="Backend API for the SheetCalc editor",
    version=APP_VERSION
)

# Enable CORS for the editor frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rates are loaded once here; passes never fetch anything
evaluator = ExpressionEvaluator(rates=load_rates())
engine = SheetEvaluator(evaluator)


def evaluate_lines(lines: List[str]) -> List[Dict[str, Any]]:
    return [LineResultResponse.from_result(r).model_dump(by_alias=True) for r in engine.evaluate(lines)]


# WebSocket connection manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def send_personal_message(self, message: str, websocket: WebSocket):
        await websocket.send_text(message)


manager = ConnectionManager()


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/")
@app.head("/")
async def root():
    """Health check endpoint"""
    return {
        "message": f"{APP_NAME} API Server",
        "version": APP_VERSION,
        "status": "running",
        "timestamp": datetime.now().isoformat()
    }


@app.post("/api/evaluate", response_model=EvaluateResponse, response_model_by_alias=True)
async def evaluate_sheet_endpoint(request: EvaluateRequest):
    """
    Evaluate a whole sheet and return one result per line.
    """
    results = engine.evaluate(request.sheet_lines())
    return EvaluateResponse(results=[LineResultResponse.from_result(r) for r in results])


@app.post("/api/calculate", response_model=LineResultResponse, response_model_by_alias=True)
async def calculate_expression(request: CalculationRequest):
    """
    Evaluate a single expression as a one-line sheet.
    """
    (result,) = engine.evaluate([request.expression])
    return LineResultResponse.from_result(result)


@app.get("/api/functions")
async def get_available_functions():
    """
    Get list of available functions for autocompletion.
    """
    functions = []
    for func_name in FUNCTION_NAMES:
        functions.append({
            "name": func_name,
            "description": f"{func_name.upper()} function"
        })

    return {"functions": functions}


@app.get("/api/currencies")
async def get_currencies():
    """
    Currency codes, glyphs and the rates the evaluator was built with.
    """
    symbols = {}
    for symbol, code in CURRENCY_SYMBOLS.items():
        symbols.setdefault(code, symbol)

    return {
        "currencies": [
            {
                "code": code,
                "name": CURRENCY_DISPLAY.get(code, code),
                "symbol": symbols.get(code),
                "rate": rate,
            }
            for code, rate in evaluator.rates.items()
        ]
    }


# =============================================================================
# WEBSOCKET ENDPOINTS
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for re-evaluating the sheet on every edit.
    """
    await manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                message = {}

            if (isinstance(message, dict) and message.get("type") == "evaluate"
                    and not isinstance(message.get("lines", []), list)):
                response = {
                    "type": "error",
                    "message": "'lines' must be a list of strings"
                }
            elif isinstance(message, dict) and message.get("type") == "evaluate":
                if "lines" in message:
                    lines = [str(line) for line in message["lines"]]
                else:
                    lines = split_lines(str(message.get("content", "")))
                response = {
                    "type": "evaluation_result",
                    "results": evaluate_lines(lines)
                }
            else:
                logger.debug("Ignoring websocket message: %r", data[:200])
                response = {
                    "type": "error",
                    "message": "Unsupported message"
                }

            await manager.send_personal_message(json.dumps(response), websocket)

    except WebSocketDisconnect:
        manager.disconnect(websocket)


# =============================================================================
# SERVER STARTUP
# =============================================================================

def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    host = os.environ.get(HOST_ENV, DEFAULT_HOST)
    port = int(os.environ.get(PORT_ENV, DEFAULT_PORT))

    logger.info("Starting %s API Server at http://%s:%d", APP_NAME, host, port)
    uvicorn.run(
        "api_server:app",
        host=host,
        port=port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
