"""Plain-text extraction from uploaded study documents."""

import csv
import logging
import os

from PyPDF2 import PdfReader
from docx import Document
from pptx import Presentation

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'.txt', '.pdf', '.csv', '.docx', '.pptx'}

MIMETYPE_EXTENSIONS = {
    'text/plain': '.txt',
    'application/pdf': '.pdf',
    'text/csv': '.csv',
    'application/vnd.ms-excel': '.csv',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': '.docx',
    'application/vnd.openxmlformats-officedocument.presentationml.presentation': '.pptx',
}


class UnsupportedFileTypeError(ValueError):
    pass


class TextExtractionError(ValueError):
    pass


def allowed_file(filename):
    return os.path.splitext(filename or '')[1].lower() in ALLOWED_EXTENSIONS


def _resolve_extension(filepath, mimetype):
    ext = os.path.splitext(filepath)[1].lower()
    if ext in ALLOWED_EXTENSIONS:
        return ext
    return MIMETYPE_EXTENSIONS.get(mimetype or '')


def extract_text_from_pdf(filepath):
    with open(filepath, 'rb') as f:
        reader = PdfReader(f)
        parts = []
        for page in reader.pages:
            parts.append(page.extract_text() or '')
    return '\n'.join(parts).strip()


def extract_text_from_csv(filepath):
    with open(filepath, 'r', encoding='utf-8', newline='') as f:
        rows = csv.DictReader(f)
        return '\n'.join(
            ' '.join(value for value in row.values() if value)
            for row in rows
        )


def extract_text_from_docx(filepath):
    """Extract text from a .docx file (paragraphs, then table cells)."""
    doc = Document(filepath)
    text = [para.text for para in doc.paragraphs if para.text]
    for table in doc.tables:
        for row in table.rows:
            for cell in row.cells:
                if cell.text:
                    text.append(cell.text)
    return '\n'.join(text)


def extract_text_from_pptx(filepath):
    """Extract text from a .pptx file (slide shapes and speaker notes)."""
    prs = Presentation(filepath)
    text = []
    for slide in prs.slides:
        for shape in slide.shapes:
            if hasattr(shape, "text") and shape.text:
                text.append(shape.text)
        if slide.has_notes_slide:
            for shape in slide.notes_slide.shapes:
                if hasattr(shape, "text") and shape.text:
                    text.append(shape.text)
    return '\n'.join(text)


EXTRACTORS = {
    '.pdf': extract_text_from_pdf,
    '.csv': extract_text_from_csv,
    '.docx': extract_text_from_docx,
    '.pptx': extract_text_from_pptx,
}


def extract_text_from_file(filepath, mimetype=None):
    """Return the text content of ``filepath``.

    The type is taken from the file extension, falling back to the upload's
    mimetype when the extension is unknown.
    """
    ext = _resolve_extension(filepath, mimetype)
    if ext is None:
        raise UnsupportedFileTypeError('Only .txt, .pdf, .csv, .docx and .pptx files are allowed!')

    logger.info("Extracting text from %s (%s)", os.path.basename(filepath), ext)
    try:
        if ext == '.txt':
            with open(filepath, 'r', encoding='utf-8') as f:
                return f.read()
        return EXTRACTORS[ext](filepath)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise TextExtractionError(f"Failed to extract text from file: {e}") from e
    except Exception as e:
        # PDF/Office parsers raise their own exception hierarchies
        logger.error("Error extracting text from %s: %s", filepath, e)
        raise TextExtractionError(f"Failed to extract text from file: {e}") from e
