"""Shared fixtures: in-memory database, local blob store in a tmp dir, and fake LLM clients."""

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from types import SimpleNamespace

import pytest

from app.agents.base import BaseAgent
from app.agents.vision_agent import VisionAgent
from app.core.context import PipelineContext, build_context
from app.core.models import ExtractionResult
from app.core.settings import Settings


class FakeCompletions:
    """Stands in for ``client.chat.completions``; replays queued responses or exceptions."""

    def __init__(self, responses: list[object]) -> None:
        """Queue the responses to return, in order."""
        self.responses = list(responses)
        self.calls: list[dict] = []

    def create(self, **kwargs: object) -> SimpleNamespace:
        """Record the request and return (or raise) the next queued response."""
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        content = response if isinstance(response, str) else json.dumps(response)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeLLMClient:
    """Minimal Groq-shaped client."""

    def __init__(self, responses: list[object]) -> None:
        """Build a client whose completions replay ``responses``."""
        self.chat = SimpleNamespace(completions=FakeCompletions(responses))

    @property
    def calls(self) -> list[dict]:
        """Requests sent so far."""
        return self.chat.completions.calls


class FakeVisionAgent(BaseAgent):
    """Vision agent returning a fixed result and recording the images it was given."""

    def __init__(self, result: ExtractionResult | None = None) -> None:
        """Initialize with the result every call returns."""
        self.result = result or ExtractionResult()
        self.calls: list[list[str]] = []
        self.during_call: Callable[[], None] | None = None

    def extract_from_images(
        self,
        images: list[str],
        mime_type: str = "image/png",
        cancelled: Callable[[], bool] | None = None,
    ) -> ExtractionResult:
        """Record the call, run ``during_call`` if set, and return the canned result."""
        _ = mime_type, cancelled
        self.calls.append(images)
        if self.during_call is not None:
            self.during_call()
        return self.result


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def make_text_pdf(lines: list[str]) -> bytes:
    """Build a one-page PDF whose text layer holds ``lines``."""
    body = " T* ".join(f"({_escape(line)}) Tj" for line in lines)
    stream = f"BT /F1 9 Tf 12 TL 40 800 Td {body} ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 842] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica /Encoding /WinAnsiEncoding >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, obj in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + obj + b"\nendobj\n"
    xref_at = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


STATEMENT_LINES = [
    "BANCOLOMBIA S.A.",
    "ESTADO DE CUENTA - CUENTA DE AHORROS",
    "NUMERO DE CUENTA: 12345678901",
    "DESDE: 2024/01/01 HASTA: 2024/01/31",
    "SALDO ANTERIOR $ 1.000.000,00",
    "TOTAL ABONOS $ 2.500.000,00",
    "TOTAL CARGOS $ 200.000,00",
    "SALDO ACTUAL $ 3.300.000,00",
    "FECHA DESCRIPCION VALOR SALDO",
    "02/01 COMPRA EN EXITO CHAPINERO 150.000,00 850.000,00",
    "05/01 ABONO NOMINA EMPRESA 2.500.000,00 3.350.000,00",
    "10/01 RETIRO CAJERO 50.000,00 3.300.000,00",
]


@pytest.fixture
def statement_lines() -> list[str]:
    """Lines of a Bancolombia savings statement for January 2024."""
    return list(STATEMENT_LINES)


@pytest.fixture
def text_pdf() -> Callable[[list[str]], bytes]:
    """Factory building one-page text PDFs."""
    return make_text_pdf


@pytest.fixture
def statement_pdf() -> bytes:
    """A text PDF for a Bancolombia savings statement with three movements."""
    return make_text_pdf(STATEMENT_LINES)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at an in-memory database and a tmp blob directory."""
    return Settings(
        groq_api_key="",
        database_url="sqlite://",
        storage_backend="local",
        local_storage_dir=str(tmp_path / "blobs"),
        storage_backoff_seconds=0.0,
        vision_backoff_seconds=0.0,
        log_file=str(tmp_path / "logs" / "import.log"),
    )


@pytest.fixture
def make_vision_agent(settings: Settings) -> Callable[[list[object]], tuple[VisionAgent, FakeLLMClient]]:
    """Factory for a real VisionAgent talking to a FakeLLMClient that replays ``responses``."""

    def factory(responses: list[object]) -> tuple[VisionAgent, FakeLLMClient]:
        client = FakeLLMClient(responses)
        return VisionAgent(client, settings, sleep=lambda _: None), client

    return factory


@pytest.fixture
def vision_agent() -> FakeVisionAgent:
    """A vision agent that returns an empty result unless a test sets one."""
    return FakeVisionAgent()


@pytest.fixture
def context(settings: Settings, vision_agent: FakeVisionAgent) -> Iterator[PipelineContext]:
    """Pipeline context without background workers; tests drive the runner directly."""
    ctx = build_context(settings, vision_agent=vision_agent, start_workers=False)
    yield ctx
    ctx.close()
