"""
Lectura del timbre electrónico (TED) de boletas y facturas chilenas.

El TED viene impreso como un código PDF417. Las fotos de celular llegan
giradas, oscuras o con poca resolución, así que se prueba una matriz de
preprocesamientos x rotaciones x binarizadores y se devuelve el primer
resultado que se pueda parsear.
"""
import io
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterator, List, Optional

import cv2
import numpy as np
import zxingcpp
from PIL import Image, ImageFilter, ImageOps

from models import TransactionRecord

try:
    from pillow_heif import read_heif
    HEIF_SUPPORT = True
except ModuleNotFoundError:  # pragma: no cover - import guard
    read_heif = None  # type: ignore
    HEIF_SUPPORT = False


PREPROCESSING_STRATEGIES = ("basic", "sharpen+normalize", "upscale+sharpen")
# 180° no se prueba: las boletas casi nunca vienen de cabeza, pero sí de lado
ROTATIONS = (0, 90, 270)
BINARIZERS = {
    "local": zxingcpp.Binarizer.LocalAverage,
    "global": zxingcpp.Binarizer.GlobalHistogram,
}

SHARPEN_MAX_EDGE = 1200
UPSCALE_MIN_WIDTH = 1000
UPSCALE_TARGET_WIDTH = 1500
CONTRAST_GAIN = 1.2

# Errores de zxing que son parte normal de la búsqueda
EXPECTED_DECODE_ERRORS = {"Format", "Checksum"}

TED_MANDATORY_TAGS = ("RE", "FE", "MNT", "F", "TD")
_BARE_AMPERSAND = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)")


class ImageConversionError(RuntimeError):
    """Raised when an uploaded image can not be converted for processing."""


SymbolDecoder = Callable[[np.ndarray, str], List[str]]


@dataclass(frozen=True)
class DecodeAttempt:
    strategy: str
    rotation: int
    binarizer: str
    run: Callable[[], List[str]]

    @property
    def label(self) -> str:
        return f"strategy={self.strategy} rotation={self.rotation}° binarizer={self.binarizer}"


def convert_heic_if_needed(file_bytes: bytes, mime_type: str) -> tuple[bytes, str]:
    normalized = (mime_type or "").lower()
    if normalized not in ("image/heic", "image/heif"):
        return file_bytes, mime_type
    if not HEIF_SUPPORT or read_heif is None:
        raise ImageConversionError(
            "Formato HEIC no soportado: instala pillow-heif o envía la foto como JPG."
        )
    heif_file = read_heif(file_bytes)
    image = Image.frombytes(heif_file.mode, heif_file.size, heif_file.data, "raw")
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="JPEG")
    return buffer.getvalue(), "image/jpeg"


def normalize_image(file_bytes: bytes, strategy: str) -> "Image.Image":
    """
    Devuelve una imagen en escala de grises (modo L) con contraste normalizado.

    - basic: grises + normalización de histograma
    - sharpen+normalize: reduce a <=1200px (sin agrandar), unsharp mask, normaliza
    - upscale+sharpen: si el ancho es < 1000px lo sube a 1500px, unsharp mask más
      fuerte, normaliza y aplica un estiramiento lineal de contraste (x1.2)
    """
    image = Image.open(io.BytesIO(file_bytes))
    image = ImageOps.exif_transpose(image)
    image.load()

    if strategy == "basic":
        return ImageOps.autocontrast(image.convert("L"), cutoff=1)

    if strategy == "sharpen+normalize":
        resized = image.copy()
        # thumbnail conserva el aspecto y nunca agranda
        resized.thumbnail((SHARPEN_MAX_EDGE, SHARPEN_MAX_EDGE), Image.Resampling.LANCZOS)
        gray = resized.convert("L")
        sharpened = gray.filter(ImageFilter.UnsharpMask(radius=1.5, percent=150, threshold=3))
        return ImageOps.autocontrast(sharpened, cutoff=1)

    if strategy == "upscale+sharpen":
        width, height = image.size
        if width < UPSCALE_MIN_WIDTH:
            target_height = max(1, round(height * UPSCALE_TARGET_WIDTH / width))
            image = image.resize((UPSCALE_TARGET_WIDTH, target_height), Image.Resampling.LANCZOS)
        gray = image.convert("L")
        sharpened = gray.filter(ImageFilter.UnsharpMask(radius=2, percent=200, threshold=2))
        normalized = ImageOps.autocontrast(sharpened, cutoff=1)
        stretched = np.clip(np.asarray(normalized, dtype=np.float32) * CONTRAST_GAIN, 0, 255)
        return Image.fromarray(stretched.astype(np.uint8))

    raise ValueError(f"Unknown preprocessing strategy: {strategy}")


def _rotate_numpy_array(image: np.ndarray, rotation: int) -> np.ndarray:
    """Rota en sentido horario."""
    if rotation % 360 == 0:
        return image
    if rotation % 360 == 90:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    if rotation % 360 == 180:
        return cv2.rotate(image, cv2.ROTATE_180)
    if rotation % 360 == 270:
        return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    raise ValueError(f"Unsupported rotation: {rotation}")


def to_luminance_source(image: "Image.Image", rotation: int) -> np.ndarray:
    """Imagen normalizada -> arreglo de luminancia (un canal, uint8) rotado, listo para zxing."""
    gray = np.asarray(image.convert("L"), dtype=np.uint8)
    # zxing-cpp solo acepta 1 o 3 canales desde numpy
    return np.ascontiguousarray(_rotate_numpy_array(gray, rotation))


def read_pdf417(luminance: np.ndarray, binarizer: str) -> List[str]:
    """Corre el lector PDF417 de zxing-cpp en modo exhaustivo y devuelve los textos válidos."""
    results = zxingcpp.read_barcodes(
        luminance,
        formats=zxingcpp.BarcodeFormat.PDF417,
        try_rotate=True,
        try_downscale=True,
        binarizer=BINARIZERS[binarizer],
        return_errors=True,
    )
    texts = []
    for result in results:
        if result.valid and result.text:
            texts.append(result.text)
            continue
        error = getattr(result, "error", None)
        error_type = getattr(getattr(error, "type", None), "name", str(getattr(error, "type", "")))
        if error_type in EXPECTED_DECODE_ERRORS:
            logging.debug(f"PDF417 {error_type} error ({binarizer}): {getattr(error, 'message', '')}")
        else:
            logging.info(f"PDF417 decoder reported {error_type or 'unknown'} error: {error}")
    return texts


def parse_ted(payload: Optional[str]) -> Optional[TransactionRecord]:
    """
    Parsea el bloque <TED>...</TED> del texto decodificado.
    Cualquier problema devuelve None: un registro parcial es peor que ninguno.
    """
    if not payload:
        return None
    start_index = payload.find("<TED")
    if start_index == -1:
        logging.debug("Decoded payload has no <TED marker")
        return None

    xml_text = payload[start_index:]
    end_index = xml_text.find("</TED>")
    if end_index != -1:
        xml_text = xml_text[: end_index + len("</TED>")]
    xml_text = _BARE_AMPERSAND.sub("&amp;", xml_text)

    try:
        root = ET.fromstring(xml_text)
        dd = root.find("DD")
        if dd is None:
            logging.info("TED without DD block, ignoring")
            return None
        values = {tag: (dd.findtext(tag) or "").strip() for tag in TED_MANDATORY_TAGS}
        missing = [tag for tag, value in values.items() if not value]
        if missing:
            logging.info(f"TED missing mandatory fields: {missing}")
            return None
        return TransactionRecord(
            issuer_id=values["RE"],
            counterparty_id=(dd.findtext("RR") or "").strip(),
            date=date.fromisoformat(values["FE"]),
            total_amount=int(values["MNT"]),
            document_number=values["F"],
            document_type=int(values["TD"]),
        )
    except (ET.ParseError, ValueError) as exc:
        logging.warning(f"Error parsing TED XML: {exc}")
        return None


class DteReader:
    """Busca y decodifica el PDF417 de un DTE probando varias combinaciones."""

    def __init__(
        self,
        symbol_decoder: Optional[SymbolDecoder] = None,
        strategies: tuple = PREPROCESSING_STRATEGIES,
        rotations: tuple = ROTATIONS,
        binarizers: tuple = tuple(BINARIZERS),
    ) -> None:
        self.symbol_decoder = symbol_decoder or read_pdf417
        self.strategies = strategies
        self.rotations = rotations
        self.binarizers = binarizers

    def iter_attempts(self, file_bytes: bytes) -> Iterator[DecodeAttempt]:
        """
        Genera los intentos en orden: estrategia -> rotación -> binarizador.
        Cada estrategia se preprocesa recién cuando se llega a ella.
        """
        for strategy in self.strategies:
            try:
                normalized = normalize_image(file_bytes, strategy)
            except Exception as exc:
                logging.warning(f"Preprocessing {strategy} failed, skipping: {exc}")
                continue
            logging.debug(f"Preprocessed ({strategy}): {normalized.width}x{normalized.height}")
            for rotation in self.rotations:
                for binarizer in self.binarizers:
                    yield DecodeAttempt(
                        strategy=strategy,
                        rotation=rotation,
                        binarizer=binarizer,
                        run=self._make_runner(normalized, rotation, binarizer),
                    )

    def _make_runner(self, image: "Image.Image", rotation: int, binarizer: str) -> Callable[[], List[str]]:
        def run() -> List[str]:
            luminance = to_luminance_source(image, rotation)
            return self.symbol_decoder(luminance, binarizer)
        return run

    def decode(self, file_bytes: bytes) -> Optional[TransactionRecord]:
        """Devuelve el primer TransactionRecord encontrado o None si ningún intento funciona."""
        attempts = 0
        for attempt in self.iter_attempts(file_bytes):
            attempts += 1
            try:
                payloads = attempt.run()
            except Exception as exc:
                logging.warning(f"Decode attempt failed ({attempt.label}): {exc}")
                continue
            for payload in payloads:
                record = parse_ted(payload)
                if record is not None:
                    logging.info(
                        f"✅ PDF417 decoded! {attempt.label} "
                        f"folio={record.document_number} amount={record.total_amount}"
                    )
                    return record
                logging.debug(f"PDF417 payload without valid TED ({attempt.label})")
        logging.info(f"PDF417 not found after {attempts} attempts")
        return None
