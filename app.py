# ---- 0) Imports ----------------------------------------------------
# (1) Load → (2) read env vars → (3) use them

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from analysis_normalizer import analyze
from app_validators import (
    InvalidInputError,
    is_allowed_file,
    read_anytabular,
    records_from_frame,
    validate_records,
)
from gemini_provider import GeminiProvider, normalize_model

# ---- 1) Load environment variables ----------------------------------

# Make sure this happens *before* you read from os.environ
ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ---- 2) Grab secrets / config ---------------------------------------

FLASK_SECRET_KEY = os.environ.get("FLASK_SECRET_KEY", os.urandom(24))
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
GEMINI_API_VERSION = os.getenv("GEMINI_API_VERSION", "v1").strip()  # v1 or v1beta
GEMINI_MODEL = normalize_model(os.getenv("GEMINI_MODEL"))
GEMINI_MAX_RETRIES = int(os.getenv("GEMINI_MAX_RETRIES", "1"))

# Upper bound on the single provider call made per analysis
ANALYSIS_TIMEOUT_S = float(os.getenv("ANALYSIS_TIMEOUT_S", "60"))

# ---- 3) Flask app setup ---------------------------------------------------

app = Flask(__name__)
app.secret_key = FLASK_SECRET_KEY

# ---- limit uploads to 5 MB ------------------------------------------------

app.config["MAX_CONTENT_LENGTH"] = 5 * 1024 * 1024

# Provider is injected through config so tests can swap in a stub
app.config["ANALYSIS_PROVIDER"] = GeminiProvider(
    api_key=GEMINI_API_KEY,
    model=GEMINI_MODEL,
    api_version=GEMINI_API_VERSION,
    timeout_s=ANALYSIS_TIMEOUT_S,
    max_retries=GEMINI_MAX_RETRIES,
)
app.config["ANALYSIS_TIMEOUT_S"] = ANALYSIS_TIMEOUT_S

# ---- 4) Rate limiter ------------------------------------------------------

storage_uri = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=storage_uri,
)
limiter.init_app(app)


def get_provider():
    return app.config["ANALYSIS_PROVIDER"]


# ---- 4a) Health check route ---------------------------------------------------


@app.get("/health")
@limiter.exempt
def health():
    return {"status": "ok"}, 200


@app.get("/ai_status")
@limiter.exempt
def ai_status():
    """Lightweight runtime check (no secrets exposed)."""
    provider = get_provider()
    return {
        "gemini_available": bool(getattr(provider, "available", False)),
        "model": getattr(provider, "model", GEMINI_MODEL),
        "api_version": getattr(provider, "api_version", GEMINI_API_VERSION),
    }, 200


@app.get("/ai_smoke")
@limiter.exempt
def ai_smoke():
    try:
        txt = get_provider().generate("Reply with: OK", timeout=app.config["ANALYSIS_TIMEOUT_S"])
        got = (txt or "").strip()
        ok = got == "OK"
        # 200 only when the check passes; 502 when model responded but not exactly "OK"
        return ({"ok": ok, "got": got}, 200 if ok else 502)
    except Exception as e:
        app.logger.warning("AI smoke check failed: %s", e)
        return {"ok": False, "error": str(e)}, 500


# ---- 5) Errors --------------------------------------------------------------


@app.errorhandler(InvalidInputError)
def handle_invalid_input(e: InvalidInputError):
    # friendlier error back to the client instead of a 500
    app.logger.info("Rejected analysis input: %s", e.message)
    return jsonify({"error": e.message}), 400


@app.errorhandler(413)
def handle_too_large(_e):
    return jsonify({"error": "File too large (max 5 MB)."}), 413


# ---- 6) Analysis route ------------------------------------------------------


def _records_from_request() -> list:
    """Rows from a JSON body ({"data": [...]}) or a multipart file upload."""
    if request.is_json:
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise InvalidInputError("Invalid or empty data provided")
        return validate_records(body.get("data"))

    if "file" not in request.files:
        raise InvalidInputError("No file provided")

    file = request.files["file"]
    if file.filename == "":
        raise InvalidInputError("No file selected.")
    if not is_allowed_file(file.filename):
        raise InvalidInputError("Invalid file type. Please upload a .csv, .xlsx or .zip file.")

    try:
        df = read_anytabular(file.stream, filename=file.filename)
    except InvalidInputError:
        raise
    except Exception as e:
        raise InvalidInputError(f"Error parsing file: {e}") from e

    records = validate_records(records_from_frame(df))
    app.logger.info(
        "Parsed upload %s: rows=%s columns=%s",
        file.filename,
        len(records),
        list(records[0].keys()),
    )
    return records


@app.post("/analyze")
@limiter.limit("10 per minute")
def analyze_data():
    records = _records_from_request()
    result = analyze(records, get_provider(), timeout=app.config["ANALYSIS_TIMEOUT_S"])
    app.logger.info("Analysis ready: rows=%s charts=%s", len(records), len(result["charts"]))
    return jsonify(result), 200


if __name__ == "__main__":
    app.run(debug=os.getenv("FLASK_DEBUG") == "1")
