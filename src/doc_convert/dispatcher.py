"""Routing from a job's conversion type to its Converter.

Converters are external collaborators; the dispatcher only resolves them,
validates options up front, and runs them on an isolated thread bounded by
the job timeout so a slow conversion never stalls a worker's polling loop.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol, Type, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    ConversionCancelled,
    ConversionError,
    ConversionTimeout,
    DocConvertError,
    UnsupportedTypeError,
    ValidationError,
)
from .queue.models import ConversionType, Job

logger = logging.getLogger(__name__)


@dataclass
class ConversionOutput:
    """What a converter hands back: bytes or a produced file, plus metadata."""

    success: bool = True
    output_bytes: Optional[bytes] = None
    output_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    filename: Optional[str] = None
    content_type: Optional[str] = None


class ConversionContext:
    """Per-attempt handle given to converters.

    Cooperative converters poll ``cancelled`` (or call ``raise_if_cancelled``)
    and may report progress; both are optional. Reported progress is only
    recorded here: the worker's heartbeat persists it with the lease renewal,
    so converter threads never touch the queue store.
    """

    def __init__(
        self,
        job_id: str,
        attempt: int = 1,
        cancelled: Optional[threading.Event] = None,
    ):
        self.job_id = job_id
        self.attempt = attempt
        self.cancelled = cancelled or threading.Event()
        self.progress = 0

    def report_progress(self, percent: int) -> None:
        self.progress = max(0, min(100, int(percent)))

    def raise_if_cancelled(self) -> None:
        if self.cancelled.is_set():
            raise ConversionCancelled(f"Job {self.job_id} was cancelled")


class Converter(Protocol):
    """Contract for external format converters."""

    def convert(
        self, input_ref: str, options: Dict[str, Any], context: ConversionContext
    ) -> ConversionOutput:
        """Convert the input; raise ConversionError on business failure."""


# --- Option schemas (validated at enqueue, passed through verbatim) ---


class _Options(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class NoOptions(_Options):
    pass


class ExcelToCsvOptions(_Options):
    sheetName: Optional[str] = None  # noqa: N815
    delimiter: str = Field(default=",", min_length=1, max_length=1)


class CsvToExcelOptions(_Options):
    sheetName: str = "Sheet1"  # noqa: N815
    delimiter: str = Field(default=",", min_length=1, max_length=1)
    hasHeaders: bool = True  # noqa: N815


class ExcelToJsonOptions(_Options):
    sheetName: Optional[str] = None  # noqa: N815
    hasHeaders: bool = True  # noqa: N815


class JsonToExcelOptions(_Options):
    sheetName: str = "Sheet1"  # noqa: N815


class MarkdownToHtmlOptions(_Options):
    includeStyles: bool = False  # noqa: N815


class ImageToTextOptions(_Options):
    language: str = Field(default="eng", pattern=r"^[a-z_]+(\+[a-z_]+)*$")
    outputFormat: Literal["text", "json"] = "text"  # noqa: N815


OPTION_SCHEMAS: Dict[ConversionType, Type[BaseModel]] = {
    ConversionType.OFFICE_TO_PDF: NoOptions,
    ConversionType.EXCEL_TO_CSV: ExcelToCsvOptions,
    ConversionType.CSV_TO_EXCEL: CsvToExcelOptions,
    ConversionType.EXCEL_TO_JSON: ExcelToJsonOptions,
    ConversionType.JSON_TO_EXCEL: JsonToExcelOptions,
    ConversionType.HTML_TO_MARKDOWN: NoOptions,
    ConversionType.MARKDOWN_TO_HTML: MarkdownToHtmlOptions,
    ConversionType.IMAGE_TO_TEXT: ImageToTextOptions,
}


def parse_type(value: Union[str, ConversionType]) -> ConversionType:
    """Parse a conversion type, treating unknown names as unsupported."""
    try:
        return ConversionType(value)
    except ValueError:
        raise UnsupportedTypeError(
            f"Unsupported conversion type: {value}",
            details={"supported": [t.value for t in ConversionType]},
        )


class Dispatcher:
    """Maps ConversionType to a registered Converter."""

    def __init__(self, job_timeout_s: float = 60.0):
        self.job_timeout_s = job_timeout_s
        self._converters: Dict[ConversionType, Converter] = {}

    def register(self, type: Union[str, ConversionType], converter: Converter) -> None:
        self._converters[parse_type(type)] = converter

    def is_registered(self, type: Union[str, ConversionType]) -> bool:
        try:
            return parse_type(type) in self._converters
        except UnsupportedTypeError:
            return False

    def supported_types(self) -> List[str]:
        return sorted(t.value for t in self._converters)

    def resolve(self, type: Union[str, ConversionType]) -> Converter:
        conversion_type = parse_type(type)
        converter = self._converters.get(conversion_type)
        if converter is None:
            raise UnsupportedTypeError(
                f"No converter registered for {conversion_type.value}",
                details={"supported": self.supported_types()},
            )
        return converter

    def validate(self, type: Union[str, ConversionType], options: Dict[str, Any]) -> ConversionType:
        """Fail fast on unroutable types and malformed options.

        Returns:
            The parsed ConversionType
        """
        conversion_type = parse_type(type)
        self.resolve(conversion_type)
        schema = OPTION_SCHEMAS.get(conversion_type, NoOptions)
        try:
            schema.model_validate(options or {})
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid options for {conversion_type.value}",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )
        return conversion_type

    def dispatch(self, job: Job, context: ConversionContext) -> ConversionOutput:
        """Run the job's converter, bounded by the job timeout.

        Raises:
            ConversionTimeout: converter exceeded job_timeout_s
            ConversionError: converter failed or returned success=False
            ConversionCancelled: cooperative converter honoured a cancellation
            ValidationError: converter rejected its input as permanently invalid
        """
        converter = self.resolve(job.type)
        outcome: Dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["output"] = converter.convert(
                    job.payload.input_ref, dict(job.payload.options), context
                )
            except BaseException as e:  # handed back to the worker thread
                outcome["error"] = e

        thread = threading.Thread(
            target=run, name=f"convert-{job.id[:8]}-{context.attempt}", daemon=True
        )
        thread.start()
        thread.join(self.job_timeout_s)

        if thread.is_alive():
            # Ask cooperative converters to stop; the thread is abandoned.
            context.cancelled.set()
            raise ConversionTimeout(
                f"Conversion exceeded JOB_TIMEOUT of {self.job_timeout_s:g}s",
                details={"jobId": job.id, "type": job.type.value},
            )

        error = outcome.get("error")
        if error is not None:
            if isinstance(error, DocConvertError):
                raise error
            if not isinstance(error, Exception):
                raise error
            raise ConversionError(f"{type(error).__name__}: {error}") from error

        output = outcome.get("output")
        if not isinstance(output, ConversionOutput):
            raise ConversionError(
                f"Converter for {job.type.value} returned {type(output).__name__}, "
                "expected ConversionOutput"
            )
        if not output.success:
            raise ConversionError(
                str(output.metadata.get("error") or f"{job.type.value} converter reported failure")
            )
        return output
