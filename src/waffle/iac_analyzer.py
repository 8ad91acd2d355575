"""
Terraform IaC analysis.

This module turns a directory of Terraform sources, and optionally a JSON
plan export, into a ``WorkloadModel``. It uses python-hcl2 to parse .tf and
.tfvars files and the standard json module for plan exports.

Pipeline (driven by the review engine):
    1. retrieve_files()          walk the directory, redact file contents
    2. validate_terraform_files() fail fast on the first syntax error
    3. parse_terraform_plan()    optional, plan JSON → "plan" model
    4. parse_terraform()         HCL → "hcl" model
    5. merge_models()            configuration-first merge when both exist
    6. extract_resources()       resources of the final model
    7. identify_relationships()  dependency graph

Usage:
    from waffle.iac_analyzer import IaCAnalyzer

    analyzer = IaCAnalyzer("/path/to/terraform")
    files = analyzer.retrieve_files()
    analyzer.validate_terraform_files(files)
    model = analyzer.parse_terraform(files)
    model.relationships = analyzer.identify_relationships(model.resources)
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, cast

import hcl2  # type: ignore[import-untyped]
from lark.exceptions import UnexpectedInput

from waffle.dependency_resolver import build_resource_graph
from waffle.errors import (
    DirectoryAccessError,
    FileAccessError,
    IaCParsingError,
    MaxFilesExceededError,
    NoFilesProvidedError,
    OperationCancelledError,
    TerraformSyntaxError,
    ValidationError,
)
from waffle.logging_config import get_logger, log_with_context
from waffle.model_merger import merge_workload_models
from waffle.models import IaCFile, Resource, ResourceGraph, SourceType, WorkloadModel
from waffle.redaction import Redactor, log_redaction_findings

logger = get_logger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_FILES = 10000

TERRAFORM_EXTENSIONS = (".tf", ".tfvars")
SKIPPED_DIRECTORIES = frozenset({"node_modules", "vendor"})

# Nested blocks that collapse to a single mapping when declared once
NESTED_BLOCK_TYPES = frozenset(
    {
        "ebs_block_device",
        "root_block_device",
        "lifecycle",
        "timeouts",
        "versioning_configuration",
        "logging",
        "cors_rule",
        "website",
        "filter",
        "tags",
        "ingress",
        "egress",
        "rule",
    }
)

# Position keys added by hcl2.loads(..., with_meta=True)
_META_KEYS = frozenset({"__start_line__", "__end_line__"})


def is_terraform_file(path: str) -> bool:
    """Return True for .tf and .tfvars files (case-insensitive)."""
    return path.lower().endswith(TERRAFORM_EXTENSIONS)


def _check_cancelled(cancel_event: threading.Event | None, operation: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(operation)


def _normalize_value(value: Any) -> Any:
    """Strip hcl2 position keys, convert integral floats and collapse nested blocks."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        value = cast(dict[str, Any], value)
        result: dict[str, Any] = {}
        for key, item in value.items():
            if key in _META_KEYS:
                continue
            normalized = _normalize_value(item)
            if (
                key in NESTED_BLOCK_TYPES
                and isinstance(normalized, list)
                and len(cast(list[Any], normalized)) == 1
                and isinstance(cast(list[Any], normalized)[0], dict)
            ):
                normalized = cast(list[Any], normalized)[0]
            result[key] = normalized
        return result
    if isinstance(value, list):
        return [_normalize_value(item) for item in cast(list[Any], value)]
    return value


def _syntax_error_from(path: str, exc: Exception) -> TerraformSyntaxError:
    line = 0
    if isinstance(exc, UnexpectedInput):
        line = max(int(getattr(exc, "line", 0) or 0), 0)
        summary = "Invalid HCL syntax"
    else:
        summary = "Failed to parse HCL"
    detail = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
    return TerraformSyntaxError(path, line, f"{summary}: {detail}")


class IaCAnalyzer:
    """
    Builds workload models from Terraform sources and plan exports.

    Attributes:
        working_dir: Root directory holding the Terraform configuration
        max_file_size: Files larger than this many bytes are skipped
        max_files: Maximum number of IaC files accepted
        redactor: Redactor applied to file contents and properties
    """

    def __init__(
        self,
        working_dir: str | Path = ".",
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_files: int = DEFAULT_MAX_FILES,
        redactor: Redactor | None = None,
        redact_sensitive_data: bool = True,
    ) -> None:
        """
        Initialize the analyzer.

        Args:
            working_dir: Directory to scan (default: current directory)
            max_file_size: Per-file size limit in bytes (default 10 MiB)
            max_files: File count limit (default 10000)
            redactor: Redactor to use (default rules when None)
            redact_sensitive_data: When False, content is kept verbatim
        """
        self.working_dir: Path = Path(working_dir).expanduser()
        self.max_file_size: int = max_file_size
        self.max_files: int = max_files
        self.redactor: Redactor = redactor or Redactor()
        self.redact_sensitive_data: bool = redact_sensitive_data

    # ------------------------------------------------------------------
    # File retrieval
    # ------------------------------------------------------------------

    def retrieve_files(self, cancel_event: threading.Event | None = None) -> list[IaCFile]:
        """
        Walk the working directory and load every Terraform file.

        Hidden directories (leading ``.``), ``node_modules`` and ``vendor``
        are skipped. Oversized files are logged and skipped. File contents
        are redacted before being returned.

        Args:
            cancel_event: Optional event checked before every file read

        Returns:
            Files in walk order, with paths relative to the working directory

        Raises:
            DirectoryAccessError: Directory missing, not a directory,
                unreadable, or holding no IaC files
            ValidationError: More than ``max_files`` files (field "file_count"),
                caused by ``MaxFilesExceededError``
            OperationCancelledError: ``cancel_event`` was set
        """
        root = self.working_dir
        if not root.exists():
            raise DirectoryAccessError(str(root), "directory does not exist")
        if not root.is_dir():
            raise DirectoryAccessError(str(root), "path is not a directory")
        if not os.access(root, os.R_OK | os.X_OK):
            raise DirectoryAccessError(str(root), "permission denied")

        log_with_context(logger, "info", "Scanning directory for IaC files", directory=str(root))

        files: list[IaCFile] = []
        file_count = 0

        def _on_walk_error(error: OSError) -> None:
            log_with_context(
                logger,
                "warning",
                "Error accessing path",
                path=getattr(error, "filename", None),
                error=str(error),
            )

        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_walk_error):
            dirnames[:] = sorted(
                name
                for name in dirnames
                if not name.startswith(".") and name not in SKIPPED_DIRECTORIES
            )

            for filename in sorted(filenames):
                if not is_terraform_file(filename):
                    continue

                file_count += 1
                if file_count > self.max_files:
                    raise ValidationError(
                        "file_count",
                        f"exceeded maximum file limit of {self.max_files}",
                        value=file_count,
                    ) from MaxFilesExceededError()

                _check_cancelled(cancel_event, "IaC file retrieval")

                path = Path(dirpath) / filename
                relative = path.relative_to(root).as_posix()
                loaded = self._read_file(path, relative)
                if loaded is not None:
                    files.append(loaded)

        if not files:
            raise DirectoryAccessError(str(root), "no IaC files found in directory")

        log_with_context(
            logger,
            "info",
            "IaC file retrieval complete",
            directory=str(root),
            files_found=len(files),
        )
        return files

    def _read_file(self, path: Path, relative: str) -> IaCFile | None:
        try:
            size = path.stat().st_size
        except OSError as e:
            log_with_context(logger, "warning", "Error getting file info", path=relative, error=str(e))
            return None

        if size > self.max_file_size:
            log_with_context(
                logger,
                "warning",
                "Skipping file exceeding size limit",
                path=relative,
                size=size,
                limit=self.max_file_size,
            )
            return None

        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except PermissionError as e:
            raise DirectoryAccessError(str(path), "permission denied reading file") from e
        except OSError as e:
            raise FileAccessError(str(path), "read", str(e)) from e

        findings: list[str] = []
        if self.redact_sensitive_data:
            content, findings = self.redactor.redact(content)
            log_redaction_findings(findings, file=relative)

        log_with_context(
            logger,
            "debug",
            "Retrieved IaC file",
            path=relative,
            size=size,
            redacted=bool(findings),
        )
        return IaCFile(path=relative, content=content)

    # ------------------------------------------------------------------
    # HCL validation and parsing
    # ------------------------------------------------------------------

    def validate_terraform_files(
        self,
        files: list[IaCFile],
        cancel_event: threading.Event | None = None,
    ) -> None:
        """
        Check that every Terraform file parses.

        Args:
            files: Files returned by ``retrieve_files``
            cancel_event: Optional event checked between files

        Raises:
            NoFilesProvidedError: If ``files`` is empty
            TerraformSyntaxError: For the first file that fails to parse
        """
        if not files:
            raise NoFilesProvidedError()

        log_with_context(logger, "info", "Validating Terraform files", file_count=len(files))

        for file in files:
            _check_cancelled(cancel_event, "Terraform validation")
            if not is_terraform_file(file.path):
                log_with_context(logger, "warning", "Skipping non-Terraform file", path=file.path)
                continue
            _ = self._load_hcl(file)

        log_with_context(logger, "info", "Terraform validation complete", files_validated=len(files))

    def _load_hcl(self, file: IaCFile) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], hcl2.loads(file.content, with_meta=True))
        except Exception as e:
            error = _syntax_error_from(file.path, e)
            log_with_context(
                logger,
                "error",
                "Terraform syntax error",
                file=file.path,
                line=error.line,
                detail=error.detail,
            )
            raise error from e

    def parse_terraform(
        self,
        files: list[IaCFile],
        cancel_event: threading.Event | None = None,
    ) -> WorkloadModel:
        """
        Parse HCL files into a workload model.

        ``resource`` blocks become resources addressed ``<type>.<name>``,
        ``data`` blocks become ``data.<type>.<name>``. ``module`` calls are
        recorded under ``metadata["modules"]`` only.

        Args:
            files: Files returned by ``retrieve_files``
            cancel_event: Optional event checked between files

        Returns:
            WorkloadModel with source type ``hcl``

        Raises:
            NoFilesProvidedError: If ``files`` is empty
            TerraformSyntaxError: If any Terraform file fails to parse
        """
        if not files:
            raise NoFilesProvidedError()

        log_with_context(logger, "info", "Parsing Terraform HCL files", file_count=len(files))

        resources: list[Resource] = []
        modules: list[dict[str, Any]] = []

        for file in files:
            _check_cancelled(cancel_event, "Terraform parsing")
            if not is_terraform_file(file.path):
                log_with_context(logger, "warning", "Skipping non-Terraform file", path=file.path)
                continue

            parsed = self._load_hcl(file)
            resources.extend(self._labelled_resources(parsed.get("resource", []), file.path, ""))
            resources.extend(self._labelled_resources(parsed.get("data", []), file.path, "data."))
            modules.extend(self._module_calls(parsed.get("module", []), file.path))

        log_with_context(
            logger,
            "info",
            "Terraform HCL parsing complete",
            total_resources=len(resources),
            module_calls=len(modules),
        )

        return WorkloadModel(
            resources=resources,
            framework="terraform",
            source_type=SourceType.HCL,
            metadata={"file_count": len(files), "modules": modules},
        )

    def _labelled_resources(
        self,
        blocks: list[dict[str, Any]],
        file_path: str,
        address_prefix: str,
    ) -> list[Resource]:
        resources: list[Resource] = []
        for block in blocks:
            for resource_type, named in block.items():
                if resource_type in _META_KEYS or not isinstance(named, dict):
                    continue
                for name, body in cast(dict[str, Any], named).items():
                    if name in _META_KEYS or not isinstance(body, dict):
                        continue
                    resources.append(
                        self._build_resource(
                            resource_type,
                            f"{address_prefix}{resource_type}.{name}",
                            cast(dict[str, Any], body),
                            file_path,
                        )
                    )
        return resources

    def _build_resource(
        self,
        resource_type: str,
        address: str,
        body: dict[str, Any],
        file_path: str,
    ) -> Resource:
        source_line = int(body.get("__start_line__", 0) or 0)
        properties = cast(dict[str, Any], _normalize_value(body))

        if self.redact_sensitive_data:
            properties, findings = self.redactor.redact_properties(properties)
            log_redaction_findings(findings, resource=address, file=file_path)

        log_with_context(
            logger,
            "debug",
            "Extracted resource from HCL",
            address=address,
            type=resource_type,
            file=file_path,
            line=source_line,
        )

        return Resource(
            id=address,
            type=resource_type,
            address=address,
            properties=properties,
            source_file=file_path,
            source_line=source_line,
        )

    @staticmethod
    def _module_calls(blocks: list[dict[str, Any]], file_path: str) -> list[dict[str, Any]]:
        modules: list[dict[str, Any]] = []
        for block in blocks:
            for name, body in block.items():
                if name in _META_KEYS or not isinstance(body, dict):
                    continue
                body = cast(dict[str, Any], body)
                source = body.get("source", "")
                modules.append(
                    {
                        "address": f"module.{name}",
                        "source": source if isinstance(source, str) else str(source),
                        "file": file_path,
                        "line": int(body.get("__start_line__", 0) or 0),
                    }
                )
                log_with_context(
                    logger,
                    "debug",
                    "Found module call in HCL",
                    address=f"module.{name}",
                    file=file_path,
                )
        return modules

    # ------------------------------------------------------------------
    # Plan parsing
    # ------------------------------------------------------------------

    def parse_terraform_plan(self, plan_file_path: str | Path) -> WorkloadModel:
        """
        Parse a ``terraform show -json`` export into a workload model.

        Resources are read from ``planned_values.root_module`` (or
        ``values.root_module`` for state exports) and recursively from
        ``child_modules``.

        Args:
            plan_file_path: Path to the JSON export

        Returns:
            WorkloadModel with source type ``plan``

        Raises:
            FileAccessError: File missing or unreadable
            IaCParsingError: Malformed JSON or unexpected document shape

        Example:
            >>> model = analyzer.parse_terraform_plan("plan.json")
            >>> [r.module_path for r in model.resources]
            ['', 'module.vpc']
        """
        path = Path(plan_file_path).expanduser()
        log_with_context(logger, "info", "Parsing Terraform JSON file", json_file=str(path))

        try:
            raw = path.read_text(encoding="utf-8")
        except PermissionError as e:
            raise FileAccessError(str(path), "access", str(e)) from e
        except OSError as e:
            raise FileAccessError(str(path), "read", str(e)) from e

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise IaCParsingError(str(path), str(e), "invalid JSON format") from e

        if not isinstance(document, dict):
            raise IaCParsingError(str(path), "top-level value is not an object", "invalid JSON format")
        document = cast(dict[str, Any], document)

        root_module = self._find_root_module(document)
        resources: list[Resource] = []
        if root_module is not None:
            resources = self._plan_module_resources(root_module, None)

        log_with_context(
            logger,
            "info",
            "Terraform JSON parsing complete",
            total_resources=len(resources),
            format_version=document.get("format_version"),
            terraform_version=document.get("terraform_version"),
        )

        return WorkloadModel(
            resources=resources,
            framework="terraform",
            source_type=SourceType.PLAN,
            metadata={
                "format_version": document.get("format_version", ""),
                "terraform_version": document.get("terraform_version", ""),
                "json_file": str(plan_file_path),
            },
        )

    @staticmethod
    def _find_root_module(document: dict[str, Any]) -> dict[str, Any] | None:
        for section in ("planned_values", "values"):
            container = document.get(section)
            if isinstance(container, dict):
                root = cast(dict[str, Any], container).get("root_module")
                if isinstance(root, dict):
                    return cast(dict[str, Any], root)
        return None

    def _plan_module_resources(
        self,
        module: dict[str, Any],
        module_address: str | None,
    ) -> list[Resource]:
        resources: list[Resource] = []

        for item in module.get("resources") or []:
            if not isinstance(item, dict):
                continue
            item = cast(dict[str, Any], item)
            address = str(item.get("address", ""))
            if not address:
                continue

            if module_address is None:
                module_path = _first_module_segment(address)
            else:
                module_path = module_address

            values = item.get("values")
            properties: dict[str, Any] = cast(dict[str, Any], values) if isinstance(values, dict) else {}
            if self.redact_sensitive_data:
                properties, findings = self.redactor.redact_properties(properties)
                log_redaction_findings(findings, resource=address)

            resources.append(
                Resource(
                    id=address,
                    type=str(item.get("type", "")),
                    address=address,
                    properties=properties,
                    is_from_plan=True,
                    module_path=module_path,
                )
            )
            log_with_context(
                logger,
                "debug",
                "Extracted resource from plan",
                address=address,
                module_path=module_path,
            )

        for child in module.get("child_modules") or []:
            if isinstance(child, dict):
                child = cast(dict[str, Any], child)
                resources.extend(
                    self._plan_module_resources(child, str(child.get("address", "")))
                )

        return resources

    # ------------------------------------------------------------------
    # Model helpers
    # ------------------------------------------------------------------

    def extract_resources(self, model: WorkloadModel | None) -> list[Resource]:
        """
        Return the resources of a workload model.

        Raises:
            ValidationError: If ``model`` is None
        """
        if model is None:
            raise ValidationError("workload_model", "workload model is required")
        log_with_context(
            logger,
            "info",
            "Extracting resources from workload model",
            resource_count=len(model.resources),
            source_type=model.source_type.value,
        )
        return model.resources

    def identify_relationships(self, resources: list[Resource]) -> ResourceGraph:
        """Infer dependencies and build the resource graph."""
        return build_resource_graph(resources)

    def merge_models(
        self,
        plan_model: WorkloadModel | None,
        source_model: WorkloadModel | None,
    ) -> WorkloadModel:
        """Merge plan and HCL models, configuration first."""
        return merge_workload_models(plan_model, source_model)


def _first_module_segment(address: str) -> str:
    parts = address.split(".")
    for index, part in enumerate(parts[:-1]):
        if part == "module":
            return f"module.{parts[index + 1]}"
    return ""
