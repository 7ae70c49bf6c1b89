# scripts/analyze_file.py
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# ensure repo root is on sys.path when running this script directly
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from analysis_normalizer import ProviderError, analyze  # noqa: E402
from app_validators import InvalidInputError, read_anytabular, records_from_frame  # noqa: E402
from gemini_provider import GeminiProvider  # noqa: E402


class OfflineProvider:
    """Never answers, so the deterministic fallback is used."""

    def generate(self, prompt_text: str, timeout: float | None = None) -> str:
        raise ProviderError("offline mode")


def load_records(path: Path) -> list:
    """Read a file into rows; parse failures surface as InvalidInputError, like /analyze."""
    try:
        df = read_anytabular(path)
    except InvalidInputError:
        raise
    except Exception as e:
        raise InvalidInputError(f"Error parsing file: {e}") from e
    return records_from_frame(df)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Analyze a CSV/XLSX/ZIP upload and print the result JSON")
    p.add_argument("--path", required=True, help="CSV/XLSX/ZIP to analyze")
    p.add_argument("--offline", action="store_true", help="skip Gemini; print the fallback analysis")
    p.add_argument("--timeout", type=float, default=60.0, help="provider timeout in seconds")
    args = p.parse_args(argv)

    load_dotenv(ROOT / ".env")
    if args.offline:
        provider = OfflineProvider()
    else:
        provider = GeminiProvider(
            api_key=os.getenv("GEMINI_API_KEY"),
            model=os.getenv("GEMINI_MODEL") or "",
            api_version=os.getenv("GEMINI_API_VERSION", "v1"),
            timeout_s=args.timeout,
        )

    try:
        records = load_records(Path(args.path))
        result = analyze(records, provider, timeout=args.timeout)
    except InvalidInputError as e:
        print(f"Invalid input: {e.message}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
