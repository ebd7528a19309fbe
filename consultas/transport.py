"""Capacidad mínima de navegador/HTTP que consume el motor.

El motor no sabe nada de Playwright: habla con un `Transport`, que se abre
uno por sesión desde un `TransportFactory`. La implementación real vive en
`consultas.playwright_transport`; los tests usan un transporte falso.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable


@dataclass
class Document:
    """Estado del documento que contiene (o devolvió) el formulario."""

    url: str
    status: int | None = None
    html: str = ""
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FormField:
    """
    Un campo a llenar. `selectors` es una lista de alternativas: se usa la
    primera que exista en el documento.
    """

    selectors: tuple[str, ...]
    value: str
    kind: str = "fill"  # "fill" | "select" | "check"


@dataclass(frozen=True)
class ImageProbe:
    selector: str
    src: str | None
    loaded: bool


class Transport(ABC):
    """Una sesión de navegador aislada (cookies propias)."""

    @abstractmethod
    async def navigate(self, url: str, *, timeout_ms: int) -> Document: ...

    @abstractmethod
    async def enter_frame(self, url_fragment: str, *, timeout_ms: int) -> Document | None:
        """Cambia el ámbito al iframe cuya URL contiene `url_fragment` (un salto)."""

    @abstractmethod
    async def current_document(self) -> Document: ...

    @abstractmethod
    async def wait_for_any(self, selectors: Iterable[str], *, timeout_ms: int) -> str | None:
        """Devuelve el primer selector presente, o None si venció el plazo."""

    @abstractmethod
    async def fetch_bytes(self, url: str, *, timeout_ms: int) -> bytes:
        """GET con las cookies de la sesión."""

    @abstractmethod
    async def probe_image(self, selectors: Iterable[str], *, frame_hint: str | None = None) -> ImageProbe | None: ...

    @abstractmethod
    async def capture_image(self, selector: str, *, frame_hint: str | None = None, timeout_ms: int) -> bytes:
        """Bytes de la imagen que el navegador YA cargó (sin disparar otro GET)."""

    @abstractmethod
    async def find_site_key(self, selectors: Iterable[str]) -> str | None: ...

    @abstractmethod
    async def inject_token(self, field_names: Iterable[str], token: str) -> None: ...

    @abstractmethod
    async def hidden_fields(self, names: Iterable[str]) -> dict[str, str]: ...

    @abstractmethod
    async def cookies(self) -> dict[str, str]: ...

    @abstractmethod
    async def submit_form(
        self,
        fields: list[FormField],
        *,
        submit_selectors: Iterable[str],
        hidden: dict[str, str] | None = None,
        expect_popup: bool = False,
        wait_selectors: Iterable[str] = (),
        timeout_ms: int,
    ) -> Document:
        """
        Llena el formulario, hace submit y devuelve el documento resultante.
        Con `expect_popup` espera la ventana secundaria con los resultados.
        """

    @abstractmethod
    async def extract_tables(self, selectors: Iterable[str]) -> list[list[list[str]]]: ...

    @abstractmethod
    async def evaluate(self, script: str, arg: Any = None, *, timeout_ms: int | None = None) -> Any: ...

    @abstractmethod
    async def close(self) -> None: ...


class TransportFactory(ABC):
    @abstractmethod
    async def open(self) -> Transport: ...
