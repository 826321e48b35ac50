"""VisionAgent: extracts statement data from page images with a multimodal LLM.

The model's answer is treated as untrusted input. ``extract_json`` recovers the JSON payload, each account and
transaction is read field by field, and every rule violation is recorded as a warning instead of aborting, so
partially valid or low-confidence results still reach human review. Failures of the call itself are reported on
the result through ``failure_kind``.
"""

import json
import time
from collections.abc import Callable
from typing import Any

import groq

from app.agents.base import BaseAgent
from app.agents.json_extractor import extract_json
from app.agents.prompts import VISION_SYSTEM_PROMPT, build_user_prompt
from app.core.errors import ErrorKind
from app.core.models import AccountType, DetectedAccount, ExtractionResult, RawTransaction
from app.core.settings import Settings
from app.core.utils import get_logger, retry_with_backoff
from app.detection.account_detector import build_account, normalize
from app.parsers.formats import ISO_PREFIX_RE, parse_amount

logger = get_logger("statement-import.vision")

TRANSIENT_ERRORS = (groq.APITimeoutError, groq.APIConnectionError, groq.RateLimitError, groq.InternalServerError)
VALID_TRANSACTION_TYPES = {"INCOME", "EXPENSE"}
DEFAULT_CONFIDENCE_WITH_DATA = 75
MAX_RESPONSE_LOG_LEN = 300


def _failed(warning: str, kind: ErrorKind | None = None) -> ExtractionResult:
    return ExtractionResult(confidence=0, warnings=[warning], failure_kind=kind)


def _non_finite_as_null(_constant: str) -> None:
    """Read ``NaN`` and ``Infinity`` literals as missing values."""


class VisionAgent(BaseAgent):
    """Agent that sends statement page images to a vision model and validates what comes back."""

    def __init__(
        self,
        llm_client: object | None,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the VisionAgent with an LLM client (None disables vision) and settings."""
        self.llm_client = llm_client
        self.settings = settings
        self.sleep = sleep

    def extract_from_images(
        self,
        images: list[str],
        mime_type: str = "image/png",
        cancelled: Callable[[], bool] | None = None,
    ) -> ExtractionResult:
        """Extract accounts and transactions from base64-encoded statement pages in a single model call."""
        if not images:
            return _failed("No images provided for vision extraction")
        if self.llm_client is None:
            logger.warning("Vision extraction requested but no API key is configured")
            return _failed("Vision extraction is not configured")

        try:
            raw_output = retry_with_backoff(
                lambda: self._call(images, mime_type),
                retry_on=TRANSIENT_ERRORS,
                attempts=self.settings.vision_max_retries,
                backoff_seconds=self.settings.vision_backoff_seconds,
                logger=logger,
                label=f"vision call ({len(images)} page(s))",
                sleep=self.sleep,
                should_stop=cancelled,
            )
        except TRANSIENT_ERRORS as exc:
            if cancelled is not None and cancelled():
                logger.info("Vision retries abandoned: import cancelled")
                return _failed("Vision extraction stopped because the import was cancelled")
            logger.exception("Vision API unavailable after retries")
            return _failed(f"Vision service unavailable: {type(exc).__name__}", ErrorKind.TRANSIENT)
        except groq.APIError as exc:
            logger.exception("Vision API call failed")
            return _failed(f"Vision API call failed: {type(exc).__name__}")

        logger.info(f"Vision OUTPUT: {raw_output[:MAX_RESPONSE_LOG_LEN]}")
        payload_text = extract_json(raw_output)
        if payload_text is None:
            logger.error(f"No JSON found in vision response: {raw_output[:MAX_RESPONSE_LOG_LEN]}")
            return _failed("Vision response did not contain JSON", ErrorKind.INTERNAL)
        try:
            payload = json.loads(payload_text, parse_constant=_non_finite_as_null)
        except json.JSONDecodeError as exc:
            logger.error(f"Vision response JSON could not be parsed: {exc}")
            return _failed("Vision response JSON could not be parsed", ErrorKind.INTERNAL)

        if (
            not isinstance(payload, dict)
            or not isinstance(payload.get("accounts"), list)
            or not isinstance(payload.get("transactions"), list)
        ):
            logger.warning(f"Vision response has an unexpected shape: {str(payload)[:MAX_RESPONSE_LOG_LEN]}")
            return _failed("Invalid response format from vision API")

        result = self._to_result(payload)
        logger.info(
            f"Vision extracted {len(result.transactions)} transactions and {len(result.accounts)} accounts "
            f"from {len(images)} page(s) (confidence={result.confidence})"
        )
        return result

    def _call(self, images: list[str], mime_type: str) -> str:
        """Send one chat completion request carrying every page image."""
        content: list[dict[str, Any]] = [{"type": "text", "text": build_user_prompt(len(images))}]
        content.extend(
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image}"}} for image in images
        )
        completion = self.llm_client.chat.completions.create(
            model=self.settings.vision_model,
            messages=[
                {"role": "system", "content": VISION_SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            temperature=self.settings.vision_temperature,
            max_completion_tokens=self.settings.vision_max_completion_tokens,
            response_format={"type": "json_object"},
            stream=False,
        )
        return completion.choices[0].message.content or ""

    def _to_result(self, payload: dict[str, Any]) -> ExtractionResult:
        warnings: list[str] = [str(w) for w in payload.get("warnings") or [] if w]

        raw_transactions = []
        for index, item in enumerate(payload["transactions"], start=1):
            if not isinstance(item, dict):
                warnings.append(f"Transaction {index}: not an object, skipped")
                continue
            warnings.extend(self._check_transaction(index, item))
            raw_data = item.get("rawData")
            raw_transactions.append(
                RawTransaction(
                    date=str(item["date"]) if item.get("date") is not None else None,
                    description=str(item.get("description") or ""),
                    amount=item.get("amount") if isinstance(item.get("amount"), int | float | str) else None,
                    type=str(item["type"]).upper() if item.get("type") else None,
                    merchant=str(item["merchant"]) if item.get("merchant") else None,
                    category=str(item["category"]) if item.get("category") else None,
                    balance=parse_amount(item.get("balance")),
                    raw_data=raw_data if isinstance(raw_data, dict) else None,
                )
            )
        transactions, normalize_warnings = normalize(raw_transactions)
        warnings.extend(normalize_warnings)

        accounts: list[DetectedAccount] = []
        for index, item in enumerate(payload["accounts"], start=1):
            if not isinstance(item, dict):
                warnings.append(f"Account {index}: not an object, skipped")
                continue
            account, account_warnings = self._to_account(index, item, len(transactions))
            warnings.extend(account_warnings)
            accounts.append(account)

        confidence = self._confidence(payload.get("confidence"), bool(transactions), warnings)
        if confidence < self.settings.min_vision_confidence:
            warnings.append(f"Low confidence extraction ({confidence} < {self.settings.min_vision_confidence})")
        if not accounts and not transactions:
            warnings.append("No accounts or transactions extracted")
        return ExtractionResult(accounts=accounts, transactions=transactions, confidence=confidence, warnings=warnings)

    @staticmethod
    def _check_transaction(index: int, item: dict[str, Any]) -> list[str]:
        problems = []
        txn_date = item.get("date")
        if not txn_date:
            problems.append(f"Transaction {index}: missing date")
        elif not ISO_PREFIX_RE.match(str(txn_date)):
            problems.append(f"Transaction {index}: date {txn_date!r} is not YYYY-MM-DD")
        if not str(item.get("description") or "").strip():
            problems.append(f"Transaction {index}: missing description")
        if item.get("amount") is None:
            problems.append(f"Transaction {index}: missing amount")
        if str(item.get("type") or "").upper() not in VALID_TRANSACTION_TYPES:
            problems.append(f"Transaction {index}: invalid type {item.get('type')!r}")
        return problems

    @staticmethod
    def _to_account(index: int, item: dict[str, Any], transaction_count: int) -> tuple[DetectedAccount, list[str]]:
        problems = []
        name = str(item.get("name") or "").strip()
        if not name:
            problems.append(f"Account {index}: missing name")
        raw_type = str(item.get("accountType") or "").strip().upper()
        if raw_type in AccountType.__members__:
            account_type = AccountType(raw_type)
        else:
            problems.append(f"Account {index}: unrecognized account type {item.get('accountType')!r}")
            account_type = AccountType.OTHER
        digits = "".join(c for c in str(item.get("accountNumber") or "") if c.isdigit())
        balance = parse_amount(item.get("initialBalance"))
        account = build_account(
            account_type,
            name=name or None,
            bank_name=str(item["bankName"]).strip() if item.get("bankName") else None,
            last4=digits[-4:] or None,
            balance=balance or 0.0,
            currency=str(item.get("currency") or "COP").upper(),
            transaction_count=transaction_count,
        )
        return account, problems

    @staticmethod
    def _confidence(value: object, has_transactions: bool, warnings: list[str]) -> int:
        if value is None:
            return DEFAULT_CONFIDENCE_WITH_DATA if has_transactions else 0
        number = parse_amount(value)
        if number is None:
            warnings.append(f"Confidence {value!r} is not a number")
            return DEFAULT_CONFIDENCE_WITH_DATA if has_transactions else 0
        return max(0, min(100, round(number)))
