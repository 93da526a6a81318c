import io
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import fitz  # PyMuPDF for page rasterization
import numpy as np
import pdfplumber

from config import Settings, settings as default_settings
from errors import DocumentError

logger = logging.getLogger(__name__)

PDF_KIND = 'pdf'
IMAGE_KIND = 'image'

IMAGE_MIME_TYPES = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.tif': 'image/tiff',
    '.tiff': 'image/tiff',
    '.bmp': 'image/bmp',
}


@dataclass(frozen=True)
class Page:
    """
    One page of a statement.

    `data` is the whole source file and is shared by every page of the
    document; `index` is 1-based.
    """
    index: int
    kind: str
    data: bytes
    native_text: Optional[str] = None

    def has_native_text(self, min_chars: int) -> bool:
        return bool(self.native_text) and len(self.native_text.strip()) > min_chars


@dataclass(frozen=True)
class Document:
    name: str
    mime_type: str
    data: bytes
    pages: Tuple[Page, ...]

    def __len__(self) -> int:
        return len(self.pages)


class FileLoader:
    """Loads PDF and image statements into immutable Documents."""

    SUPPORTED_EXTENSIONS = {'.pdf'} | set(IMAGE_MIME_TYPES)

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def load_document(self, file_path: str) -> Document:
        """
        Load a statement file from disk.

        Args:
            file_path: Path to a PDF or image file

        Returns:
            Document with one Page per PDF page (a single page for images)
        """
        if not os.path.exists(file_path):
            raise DocumentError(f"File not found: {file_path}")

        self._check_extension(file_path)
        self.logger.info(f"Loading statement file: {file_path}")

        try:
            data = Path(file_path).read_bytes()
        except OSError as e:
            self.logger.error(f"Error reading file {file_path}: {str(e)}")
            raise DocumentError(f"Could not read {file_path}: {e}") from e

        return self.load_bytes(data, Path(file_path).name)

    def load_bytes(self, data: bytes, name: str) -> Document:
        """Build a Document from in-memory file content; `name` supplies the extension."""
        file_ext = self._check_extension(name)
        if not data:
            raise DocumentError(f"Empty document: {name}")

        if file_ext == '.pdf':
            pages = self._load_pdf(data, name)
            mime_type = 'application/pdf'
        else:
            pages = [Page(index=1, kind=IMAGE_KIND, data=data)]
            mime_type = IMAGE_MIME_TYPES[file_ext]

        self.logger.info(f"Loaded {len(pages)} page(s) from {name}")
        return Document(name=name, mime_type=mime_type, data=data, pages=tuple(pages))

    def _check_extension(self, name: str) -> str:
        file_ext = Path(name).suffix.lower()
        if file_ext not in self.SUPPORTED_EXTENSIONS:
            raise DocumentError(f"Unsupported file type: {file_ext or name}")
        return file_ext

    def _load_pdf(self, data: bytes, name: str) -> List[Page]:
        """Read the native text layer of every page with pdfplumber."""
        pages = []
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                for i, pdf_page in enumerate(pdf.pages):
                    text = pdf_page.extract_text() or ''
                    pages.append(Page(index=i + 1, kind=PDF_KIND, data=data,
                                      native_text=text if text.strip() else None))
        except Exception as e:
            self.logger.error(f"Error reading PDF file {name}: {str(e)}")
            raise DocumentError(f"Error reading PDF file: {str(e)}") from e

        if not pages:
            raise DocumentError(f"PDF has no pages: {name}")

        text_pages = sum(1 for page in pages if page.native_text)
        if not text_pages:
            self.logger.warning("No text layer found in PDF - pages will need OCR")
        return pages


class PageRenderer:
    """Rasterizes pages to BGR numpy images for OCR."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.logger = logging.getLogger(self.__class__.__name__)

    def render(self, page: Page, dpi: int) -> np.ndarray:
        """
        Render a page at the requested resolution.

        Args:
            page: Page to render
            dpi: Target resolution; PDF points are 72 per inch

        Returns:
            BGR image array
        """
        if page.kind == PDF_KIND:
            return self._render_pdf_page(page, dpi)
        return self._render_image(page, dpi)

    def _render_pdf_page(self, page: Page, dpi: int) -> np.ndarray:
        # A fresh handle per call keeps concurrent page tasks independent.
        try:
            with fitz.open(stream=page.data, filetype='pdf') as pdf_document:
                pdf_page = pdf_document.load_page(page.index - 1)
                zoom = dpi / 72.0
                pix = pdf_page.get_pixmap(matrix=fitz.Matrix(zoom, zoom))
                img_data = pix.tobytes('png')
        except Exception as e:
            self.logger.error(f"Rendering page {page.index} failed: {str(e)}")
            raise DocumentError(f"Could not render page {page.index}: {e}") from e

        return self._decode(img_data, page.index)

    def _render_image(self, page: Page, dpi: int) -> np.ndarray:
        img = self._decode(page.data, page.index)
        scale = dpi / float(self.settings.OCR_HIGH_DPI)
        if scale < 1.0:
            height, width = img.shape[:2]
            size = (max(1, int(width * scale)), max(1, int(height * scale)))
            img = cv2.resize(img, size, interpolation=cv2.INTER_AREA)
        return img

    @staticmethod
    def _decode(img_data: bytes, page_index: int) -> np.ndarray:
        nparr = np.frombuffer(img_data, np.uint8)
        img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
        if img is None:
            raise DocumentError(f"Page {page_index} is not a decodable image")
        return img
