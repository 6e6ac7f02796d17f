"""Converter adapters registered with the dispatcher.

Office documents and images are handed to external tools (LibreOffice,
Tesseract); these classes only build the command line, enforce a process
timeout and classify failures for the retry policy. Spreadsheet and markup
formats are converted in-process with openpyxl, Markdown and markdownify.

- missing/unsupported/malformed input -> ValidationError (permanent, no retry)
- tool timeout                        -> ConversionTimeout (retryable)
- non-zero exit, missing tool         -> ConversionError (retryable)
"""

import csv
import datetime
import html
import io
import json
import logging
import re
import shutil
import subprocess
import tempfile
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Type, Union

import markdown
import openpyxl
import pydantic
from markdownify import ATX, markdownify
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import IllegalCharacterError, InvalidFileException
from pydantic import BaseModel

from .dispatcher import (
    ConversionContext,
    ConversionOutput,
    CsvToExcelOptions,
    Dispatcher,
    ExcelToCsvOptions,
    ExcelToJsonOptions,
    JsonToExcelOptions,
    MarkdownToHtmlOptions,
    NoOptions,
)
from .errors import ConversionError, ConversionTimeout, ValidationError
from .models import DocConvertConfig
from .queue.models import ConversionType

logger = logging.getLogger(__name__)

OFFICE_EXTENSIONS = frozenset(
    {".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods", ".odp", ".rtf"}
)
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".gif", ".webp"})


def _check_input(input_ref: str, allowed: Optional[Iterable[str]] = None) -> Path:
    path = Path(input_ref)
    if not path.is_file():
        raise ValidationError(f"Input file not found: {path.name}")
    if allowed is not None and path.suffix.lower() not in allowed:
        raise ValidationError(
            f"Unsupported input extension {path.suffix or '(none)'}",
            details={"allowed": sorted(allowed)},
        )
    return path


def _run_tool(argv: List[str], timeout_s: float) -> subprocess.CompletedProcess:
    """Run an external tool, translating failures into conversion errors."""
    logger.debug("Running %s", " ".join(argv))
    try:
        completed = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired:
        raise ConversionTimeout(f"{Path(argv[0]).name} timed out after {timeout_s:g}s")
    except FileNotFoundError:
        raise ConversionError(f"{argv[0]} not found in PATH")

    if completed.returncode != 0:
        stderr = (completed.stderr or completed.stdout or "").strip()
        raise ConversionError(
            f"{Path(argv[0]).name} exited with code {completed.returncode}: "
            f"{stderr[:500] or 'no output'}"
        )
    return completed


class LibreOfficeConverter:
    """office-to-pdf through a headless LibreOffice."""

    def __init__(self, soffice_path: str = "soffice", timeout_s: float = 60.0):
        self.soffice_path = soffice_path
        self.timeout_s = timeout_s

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, OFFICE_EXTENSIONS)
        context.raise_if_cancelled()

        with tempfile.TemporaryDirectory(prefix="doc_convert_soffice_") as outdir:
            _run_tool(
                [
                    self.soffice_path,
                    "--headless",
                    "--convert-to",
                    "pdf",
                    "--outdir",
                    outdir,
                    str(source),
                ],
                self.timeout_s,
            )
            pdf = Path(outdir) / f"{source.stem}.pdf"
            if not pdf.is_file():
                raise ConversionError("LibreOffice produced no PDF output")
            data = pdf.read_bytes()

        context.report_progress(100)
        return ConversionOutput(
            output_bytes=data,
            filename=f"{source.stem}.pdf",
            content_type="application/pdf",
            metadata={
                "convertedFrom": source.suffix.lstrip(".").lower(),
                "size": len(data),
            },
        )


class CommandConverter:
    """Generic external command converter.

    ``argv_template`` items may contain ``{input}``, ``{output}``,
    ``{output_stem}`` and any option name, e.g.::

        CommandConverter(
            ["tesseract", "{input}", "{output_stem}", "-l", "{language}"],
            output_suffix=".txt",
            defaults={"language": "eng"},
        )
    """

    def __init__(
        self,
        argv_template: List[str],
        output_suffix: str,
        content_type: str = "application/octet-stream",
        timeout_s: float = 60.0,
        defaults: Optional[Dict[str, Any]] = None,
        allowed_extensions: Optional[Iterable[str]] = None,
    ):
        self.argv_template = list(argv_template)
        self.output_suffix = output_suffix
        self.content_type = content_type
        self.timeout_s = timeout_s
        self.defaults = dict(defaults or {})
        self.allowed_extensions = (
            frozenset(allowed_extensions) if allowed_extensions is not None else None
        )

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, self.allowed_extensions)
        context.raise_if_cancelled()

        with tempfile.TemporaryDirectory(prefix="doc_convert_cmd_") as outdir:
            output_stem = Path(outdir) / source.stem
            output = output_stem.with_suffix(self.output_suffix)
            values = {**self.defaults, **options}
            values.update(input=str(source), output=str(output), output_stem=str(output_stem))
            try:
                argv = [part.format(**values) for part in self.argv_template]
            except KeyError as e:
                raise ValidationError(f"Missing option for command: {e.args[0]}")

            _run_tool(argv, self.timeout_s)
            if not output.is_file():
                raise ConversionError(f"{Path(argv[0]).name} produced no output")
            data = output.read_bytes()

        context.report_progress(100)
        return ConversionOutput(
            output_bytes=data,
            filename=f"{source.stem}{self.output_suffix}",
            content_type=self.content_type,
            metadata={"tool": Path(self.argv_template[0]).name, "size": len(data)},
        )


class CallableConverter:
    """Adapt a plain function to the Converter contract.

    The function receives ``(input_ref, options)`` and returns bytes, text or a
    ConversionOutput.
    """

    def __init__(
        self,
        fn: Callable[[str, Dict[str, Any]], Union[bytes, str, ConversionOutput]],
        filename_suffix: str = ".out",
        content_type: Optional[str] = None,
    ):
        self.fn = fn
        self.filename_suffix = filename_suffix
        self.content_type = content_type

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        context.raise_if_cancelled()
        produced = self.fn(input_ref, options)
        if isinstance(produced, ConversionOutput):
            return produced
        if isinstance(produced, str):
            produced = produced.encode("utf-8")
        return ConversionOutput(
            output_bytes=produced,
            filename=f"{Path(input_ref).stem}{self.filename_suffix}",
            content_type=self.content_type,
        )


# --- Spreadsheet and markup converters (in-process, library backed) ---

SPREADSHEET_EXTENSIONS = frozenset({".xlsx", ".xlsm"})
CSV_EXTENSIONS = frozenset({".csv", ".tsv", ".txt"})
JSON_EXTENSIONS = frozenset({".json"})
MARKDOWN_EXTENSIONS = frozenset({".md", ".markdown", ".txt"})
HTML_EXTENSIONS = frozenset({".html", ".htm"})

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
HEADER_FONT = Font(bold=True)
HEADER_FILL = PatternFill(fill_type="solid", fgColor="FFE0E0E0")


def _parse_options(schema: Type[BaseModel], options: Dict[str, Any]) -> Any:
    try:
        return schema.model_validate(options or {})
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid options: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        )


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as e:
        raise ValidationError(f"{path.name} is not UTF-8 text: {e.reason}")


def _plain(value: Any) -> Any:
    """Cell value as something csv/json can carry."""
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    return value


def _blank(row: Iterable[Any]) -> bool:
    return all(value is None or value == "" for value in row)


@contextmanager
def _open_sheet(path: Path, sheet_name: Optional[str]) -> Iterator[Tuple[Workbook, Any]]:
    """Open a workbook read-only and yield it with the requested worksheet."""
    try:
        workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
        raise ValidationError(f"{path.name} is not a readable workbook: {e}")
    try:
        if sheet_name:
            if sheet_name not in workbook.sheetnames:
                raise ValidationError(
                    f'Sheet "{sheet_name}" not found', details={"sheets": workbook.sheetnames}
                )
            sheet = workbook[sheet_name]
        elif workbook.worksheets:
            sheet = workbook.worksheets[0]
        else:
            raise ValidationError("No worksheets found in workbook")
        yield workbook, sheet
    finally:
        workbook.close()


def _new_sheet(title: str) -> Tuple[Workbook, Any]:
    workbook = Workbook()
    sheet = workbook.active
    try:
        sheet.title = title
    except ValueError as e:
        raise ValidationError(f"Invalid sheet name {title!r}: {e}")
    return workbook, sheet


def _append(sheet: Any, row: List[Any]) -> None:
    try:
        sheet.append(row)
    except IllegalCharacterError as e:
        raise ValidationError(f"Value cannot be stored in a worksheet: {e}")


def _finish_sheet(workbook: Workbook, sheet: Any, header: bool) -> bytes:
    """Style the header row, size columns (10-50 chars) and serialize."""
    if header and sheet.max_row >= 1:
        for cell in sheet[1]:
            cell.font = HEADER_FONT
            cell.fill = HEADER_FILL
    for column in sheet.iter_cols():
        longest = max((len(str(c.value)) for c in column if c.value is not None), default=0)
        letter = get_column_letter(column[0].column)
        sheet.column_dimensions[letter].width = min(max(longest + 2, 10), 50)

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class ExcelToCsvConverter:
    """excel-to-csv: one worksheet (first by default) as delimited text."""

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, SPREADSHEET_EXTENSIONS)
        opts = _parse_options(ExcelToCsvOptions, options)

        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=opts.delimiter, lineterminator="\n")
        rows = 0
        with _open_sheet(source, opts.sheetName) as (_, sheet):
            title = sheet.title
            for row in sheet.iter_rows(values_only=True):
                context.raise_if_cancelled()
                if _blank(row):
                    continue
                writer.writerow(["" if v is None else _plain(v) for v in row])
                rows += 1

        context.report_progress(100)
        return ConversionOutput(
            output_bytes=buffer.getvalue().encode("utf-8"),
            filename=f"{source.stem}.csv",
            content_type="text/csv",
            metadata={"sheet": title, "rowCount": rows},
        )


class CsvToExcelConverter:
    """csv-to-excel: delimited text into a single styled worksheet."""

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, CSV_EXTENSIONS)
        opts = _parse_options(CsvToExcelOptions, options)
        text = _read_text(source)

        workbook, sheet = _new_sheet(opts.sheetName)
        rows = 0
        try:
            for row in csv.reader(io.StringIO(text), delimiter=opts.delimiter):
                context.raise_if_cancelled()
                if _blank(row):
                    continue
                _append(sheet, row)
                rows += 1
        except csv.Error as e:
            raise ValidationError(f"Malformed CSV: {e}")

        data = _finish_sheet(workbook, sheet, header=opts.hasHeaders and rows > 0)
        context.report_progress(100)
        return ConversionOutput(
            output_bytes=data,
            filename=f"{source.stem}.xlsx",
            content_type=XLSX_CONTENT_TYPE,
            metadata={"sheet": opts.sheetName, "rowCount": rows},
        )


class ExcelToJsonConverter:
    """excel-to-json: rows as objects keyed by the header row, or as arrays."""

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, SPREADSHEET_EXTENSIONS)
        opts = _parse_options(ExcelToJsonOptions, options)

        rows: List[List[Any]] = []
        with _open_sheet(source, opts.sheetName) as (workbook, sheet):
            sheets = list(workbook.sheetnames)
            for row in sheet.iter_rows(values_only=True):
                context.raise_if_cancelled()
                if not _blank(row):
                    rows.append([_plain(v) for v in row])

        records: List[Any] = rows
        if opts.hasHeaders and rows:
            headers = [
                str(h) if h not in (None, "") else f"column_{i}" for i, h in enumerate(rows[0])
            ]
            records = [
                {h: (row[i] if i < len(row) else None) for i, h in enumerate(headers)}
                for row in rows[1:]
            ]

        data = json.dumps(records, indent=2, ensure_ascii=False, default=str).encode("utf-8")
        context.report_progress(100)
        return ConversionOutput(
            output_bytes=data,
            filename=f"{source.stem}.json",
            content_type="application/json",
            metadata={"sheets": sheets, "rowCount": len(records)},
        )


class JsonToExcelConverter:
    """json-to-excel: an array of objects (or a single object) as one worksheet.

    Columns come from the first object's keys; nested values are written as
    JSON text.
    """

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, JSON_EXTENSIONS)
        opts = _parse_options(JsonToExcelOptions, options)

        try:
            items = json.loads(_read_text(source))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON format: {e.msg} (line {e.lineno})")
        if isinstance(items, dict):
            items = [items]
        if not isinstance(items, list):
            raise ValidationError("JSON data must be an array or object")
        if not items:
            raise ValidationError("JSON data is empty")
        if not all(isinstance(item, dict) for item in items):
            raise ValidationError("JSON array items must be objects")

        headers = list(items[0].keys())
        workbook, sheet = _new_sheet(opts.sheetName)
        _append(sheet, headers)
        for item in items:
            context.raise_if_cancelled()
            row = []
            for header in headers:
                value = item.get(header)
                row.append(json.dumps(value) if isinstance(value, (dict, list)) else value)
            _append(sheet, row)

        data = _finish_sheet(workbook, sheet, header=True)
        context.report_progress(100)
        return ConversionOutput(
            output_bytes=data,
            filename=f"{source.stem}.xlsx",
            content_type=XLSX_CONTENT_TYPE,
            metadata={"sheet": opts.sheetName, "rowCount": len(items), "columns": headers},
        )


HTML_DOCUMENT = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{title}</title>{style}
</head>
<body>
{body}
</body>
</html>
"""

HTML_STYLE = """
<style>
body { font-family: -apple-system, "Segoe UI", Roboto, Arial, sans-serif;
       line-height: 1.6; color: #333; max-width: 800px; margin: 0 auto; padding: 20px; }
h1, h2 { border-bottom: 1px solid #eee; padding-bottom: 0.3em; }
code { background: #f4f4f4; padding: 2px 4px; border-radius: 3px; }
pre { background: #f8f8f8; border: 1px solid #ddd; padding: 12px; overflow-x: auto; }
pre code { background: transparent; padding: 0; }
blockquote { border-left: 4px solid #ddd; margin-left: 0; padding-left: 16px; color: #666; }
table { border-collapse: collapse; width: 100%; }
th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
th { background: #f4f4f4; }
img { max-width: 100%; }
</style>"""


class MarkdownToHtmlConverter:
    """markdown-to-html: a standalone HTML document, optionally styled."""

    extensions = ["extra", "sane_lists", "nl2br"]

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, MARKDOWN_EXTENSIONS)
        opts = _parse_options(MarkdownToHtmlOptions, options)
        context.raise_if_cancelled()

        body = markdown.markdown(_read_text(source), extensions=self.extensions)
        document = HTML_DOCUMENT.format(
            title=html.escape(source.stem),
            style=HTML_STYLE if opts.includeStyles else "",
            body=body,
        )

        context.report_progress(100)
        return ConversionOutput(
            output_bytes=document.encode("utf-8"),
            filename=f"{source.stem}.html",
            content_type="text/html",
            metadata={"styled": opts.includeStyles},
        )


class HtmlToMarkdownConverter:
    """html-to-markdown with ATX headings and ``-`` bullets."""

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        source = _check_input(input_ref, HTML_EXTENSIONS)
        _parse_options(NoOptions, options)
        context.raise_if_cancelled()

        converted = markdownify(_read_text(source), heading_style=ATX, bullets="-")
        text = re.sub(r"\n{3,}", "\n\n", converted).strip() + "\n"

        context.report_progress(100)
        return ConversionOutput(
            output_bytes=text.encode("utf-8"),
            filename=f"{source.stem}.md",
            content_type="text/markdown",
        )


IN_PROCESS_CONVERTERS = {
    ConversionType.EXCEL_TO_CSV: ExcelToCsvConverter,
    ConversionType.CSV_TO_EXCEL: CsvToExcelConverter,
    ConversionType.EXCEL_TO_JSON: ExcelToJsonConverter,
    ConversionType.JSON_TO_EXCEL: JsonToExcelConverter,
    ConversionType.MARKDOWN_TO_HTML: MarkdownToHtmlConverter,
    ConversionType.HTML_TO_MARKDOWN: HtmlToMarkdownConverter,
}


def build_default_dispatcher(config: DocConvertConfig) -> Dispatcher:
    """Register in-process converters and the external tools found on this host."""
    dispatch = config.dispatch
    dispatcher = Dispatcher(job_timeout_s=dispatch.job_timeout_s)

    for conversion_type, converter_cls in IN_PROCESS_CONVERTERS.items():
        dispatcher.register(conversion_type, converter_cls())

    if shutil.which(dispatch.soffice_path):
        dispatcher.register(
            ConversionType.OFFICE_TO_PDF,
            LibreOfficeConverter(dispatch.soffice_path, timeout_s=dispatch.job_timeout_s),
        )
    else:
        logger.warning("%s not found; office-to-pdf disabled", dispatch.soffice_path)

    if shutil.which(dispatch.tesseract_path):
        dispatcher.register(
            ConversionType.IMAGE_TO_TEXT,
            CommandConverter(
                [dispatch.tesseract_path, "{input}", "{output_stem}", "-l", "{language}"],
                output_suffix=".txt",
                content_type="text/plain",
                timeout_s=dispatch.job_timeout_s,
                defaults={"language": "eng"},
                allowed_extensions=IMAGE_EXTENSIONS,
            ),
        )
    else:
        logger.warning("%s not found; image-to-text disabled", dispatch.tesseract_path)

    return dispatcher
