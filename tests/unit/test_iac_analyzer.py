"""
Unit tests for the Terraform IaC analyzer.

Tests cover file discovery, syntax validation, HCL and plan parsing,
redaction of file contents and the analyzer's model helpers.
"""

import json
import threading
from pathlib import Path
from typing import Any

import pytest

from waffle.errors import (
    DirectoryAccessError,
    FileAccessError,
    IaCParsingError,
    MaxFilesExceededError,
    NoFilesProvidedError,
    OperationCancelledError,
    TerraformSyntaxError,
    ValidationError,
    is_error_kind,
)
from waffle.iac_analyzer import IaCAnalyzer, is_terraform_file
from waffle.models import IaCFile, SourceType


class TestRetrieveFiles:
    """Tests for directory scanning."""

    def test_finds_terraform_files_in_walk_order(self, sample_terraform_repo: Path) -> None:
        """Test that .tf files are found and hidden or non-IaC files skipped."""
        files = IaCAnalyzer(sample_terraform_repo).retrieve_files()

        assert [f.path for f in files] == [
            "iam.tf",
            "main.tf",
            "s3.tf",
            "variables.tf",
            "modules/network/main.tf",
        ]

    def test_skips_vendor_and_node_modules(self, sample_terraform_repo: Path) -> None:
        """Test that dependency directories are not scanned."""
        for name in ("vendor", "node_modules"):
            directory = sample_terraform_repo / name
            directory.mkdir()
            _ = (directory / "extra.tf").write_text('resource "aws_sqs_queue" "q" {}\n')

        files = IaCAnalyzer(sample_terraform_repo).retrieve_files()

        assert not any(f.path.startswith(("vendor", "node_modules")) for f in files)

    def test_includes_tfvars(self, tmp_path: Path) -> None:
        """Test that .tfvars files are collected."""
        _ = (tmp_path / "prod.tfvars").write_text('region = "us-east-1"\n')

        files = IaCAnalyzer(tmp_path).retrieve_files()

        assert [f.path for f in files] == ["prod.tfvars"]

    def test_contents_are_redacted(self, tmp_path: Path) -> None:
        """Test that secrets in file contents are redacted on read."""
        _ = (tmp_path / "db.tf").write_text(
            'resource "aws_db_instance" "db" {\n  password = "hunter2"\n}\n'
        )

        files = IaCAnalyzer(tmp_path).retrieve_files()

        assert "hunter2" not in files[0].content
        assert '"[REDACTED]"' in files[0].content

    def test_redaction_can_be_disabled(self, tmp_path: Path) -> None:
        """Test that contents are verbatim when redaction is off."""
        _ = (tmp_path / "db.tf").write_text('password = "hunter2"\n')

        files = IaCAnalyzer(tmp_path, redact_sensitive_data=False).retrieve_files()

        assert files[0].content == 'password = "hunter2"\n'

    def test_oversized_files_skipped(self, sample_terraform_repo: Path) -> None:
        """Test that files over the size limit are left out."""
        _ = (sample_terraform_repo / "huge.tf").write_text("#" * 2000)

        files = IaCAnalyzer(sample_terraform_repo, max_file_size=1000).retrieve_files()

        assert "huge.tf" not in [f.path for f in files]

    def test_missing_directory(self, tmp_path: Path) -> None:
        """Test that a missing directory raises DirectoryAccessError."""
        with pytest.raises(DirectoryAccessError) as exc_info:
            _ = IaCAnalyzer(tmp_path / "nope").retrieve_files()

        assert exc_info.value.reason == "directory does not exist"

    def test_path_is_a_file(self, tmp_path: Path) -> None:
        """Test that a file path raises DirectoryAccessError."""
        target = tmp_path / "main.tf"
        _ = target.write_text("")

        with pytest.raises(DirectoryAccessError) as exc_info:
            _ = IaCAnalyzer(target).retrieve_files()

        assert exc_info.value.reason == "path is not a directory"

    def test_no_iac_files(self, tmp_path: Path) -> None:
        """Test that a directory without Terraform files is an error."""
        _ = (tmp_path / "README.md").write_text("# nothing\n")

        with pytest.raises(DirectoryAccessError) as exc_info:
            _ = IaCAnalyzer(tmp_path).retrieve_files()

        assert exc_info.value.reason == "no IaC files found in directory"

    def test_max_files_exceeded(self, sample_terraform_repo: Path) -> None:
        """Test that exceeding the file limit raises a validation error."""
        with pytest.raises(ValidationError) as exc_info:
            _ = IaCAnalyzer(sample_terraform_repo, max_files=2).retrieve_files()

        assert exc_info.value.field == "file_count"
        assert is_error_kind(exc_info.value, MaxFilesExceededError)

    def test_cancelled(self, sample_terraform_repo: Path) -> None:
        """Test that a set cancel event stops retrieval."""
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(OperationCancelledError):
            _ = IaCAnalyzer(sample_terraform_repo).retrieve_files(cancel_event)


class TestValidateTerraformFiles:
    """Tests for syntax validation."""

    def test_valid_files_pass(self, sample_terraform_repo: Path) -> None:
        """Test that the sample repository validates."""
        analyzer = IaCAnalyzer(sample_terraform_repo)

        analyzer.validate_terraform_files(analyzer.retrieve_files())

    def test_empty_input(self) -> None:
        """Test that no files raises NoFilesProvidedError."""
        with pytest.raises(NoFilesProvidedError):
            IaCAnalyzer().validate_terraform_files([])

    def test_syntax_error_names_file(self) -> None:
        """Test that the first broken file is reported."""
        files = [
            IaCFile(path="good.tf", content='variable "x" {}\n'),
            IaCFile(path="broken.tf", content='resource "aws_s3_bucket" "b" {\n  bucket = \n'),
        ]

        with pytest.raises(TerraformSyntaxError) as exc_info:
            IaCAnalyzer().validate_terraform_files(files)

        assert exc_info.value.file == "broken.tf"
        assert exc_info.value.detail

    def test_non_terraform_paths_skipped(self) -> None:
        """Test that files without a Terraform extension are not parsed."""
        files = [IaCFile(path="notes.txt", content="this is { not hcl")]

        IaCAnalyzer().validate_terraform_files(files)

    def test_comparisons_survive_redaction(self, tmp_path: Path) -> None:
        """Test that == comparisons on secret-named variables stay valid HCL."""
        content = (
            'variable "secret_arn" {\n  default = null\n}\n\n'
            'variable "api_token" {\n  default = ""\n}\n\n'
            "locals {\n"
            "  enabled     = var.secret_arn == null ? 0 : 1\n"
            '  use_default = var.api_token == ""\n'
            "}\n"
        )
        _ = (tmp_path / "main.tf").write_text(content)
        analyzer = IaCAnalyzer(tmp_path)

        files = analyzer.retrieve_files()
        analyzer.validate_terraform_files(files)

        assert files[0].content == content


class TestParseTerraform:
    """Tests for HCL parsing."""

    def test_resource_and_data_addresses(self, sample_terraform_repo: Path) -> None:
        """Test that resources and data sources get Terraform addresses."""
        analyzer = IaCAnalyzer(sample_terraform_repo)

        model = analyzer.parse_terraform(analyzer.retrieve_files())

        addresses = {r.address for r in model.resources}
        assert addresses == {
            "aws_iam_role.app",
            "data.aws_iam_policy_document.assume",
            "aws_kms_key.data",
            "aws_s3_bucket.data",
            "aws_s3_bucket_versioning.data",
            "aws_vpc.main",
        }
        assert model.source_type == SourceType.HCL
        assert model.framework == "terraform"
        assert model.metadata["file_count"] == 5

    def test_resource_details(self, sample_terraform_repo: Path) -> None:
        """Test types, source locations and normalized properties."""
        analyzer = IaCAnalyzer(sample_terraform_repo)

        model = analyzer.parse_terraform(analyzer.retrieve_files())
        by_address = {r.address: r for r in model.resources}

        bucket = by_address["aws_s3_bucket.data"]
        assert bucket.type == "aws_s3_bucket"
        assert bucket.source_file == "s3.tf"
        assert bucket.source_line == 6
        assert bucket.properties["bucket"] == "example-data-bucket"
        assert bucket.properties["tags"] == {"Environment": "test"}
        assert bucket.is_from_plan is False

        versioning = by_address["aws_s3_bucket_versioning.data"]
        assert versioning.properties["versioning_configuration"] == {"status": "Enabled"}
        assert "aws_s3_bucket.data" in versioning.properties["bucket"]

        data = by_address["data.aws_iam_policy_document.assume"]
        assert data.type == "aws_iam_policy_document"
        assert data.source_file == "iam.tf"

        vpc = by_address["aws_vpc.main"]
        assert vpc.source_file == "modules/network/main.tf"
        assert vpc.properties["cidr_block"] == "[PRIVATE_IP]/16"

    def test_no_position_keys_leak(self, sample_terraform_repo: Path) -> None:
        """Test that parser position metadata is stripped from properties."""
        analyzer = IaCAnalyzer(sample_terraform_repo)

        model = analyzer.parse_terraform(analyzer.retrieve_files())

        for resource in model.resources:
            assert "__start_line__" not in json.dumps(resource.properties)

    def test_module_calls_recorded(self, sample_terraform_repo: Path) -> None:
        """Test that module calls land in metadata, not in resources."""
        analyzer = IaCAnalyzer(sample_terraform_repo)

        model = analyzer.parse_terraform(analyzer.retrieve_files())

        modules = model.metadata["modules"]
        assert len(modules) == 1
        assert modules[0]["address"] == "module.network"
        assert modules[0]["source"] == "./modules/network"
        assert modules[0]["file"] == "main.tf"

    def test_sensitive_properties_redacted(self) -> None:
        """Test that sensitive attributes never reach the model."""
        files = [
            IaCFile(
                path="db.tf",
                content='resource "aws_db_instance" "db" {\n  engine = "postgres"\n  password = var.db_password\n}\n',
            )
        ]

        model = IaCAnalyzer().parse_terraform(files)

        assert model.resources[0].properties["password"] == "[REDACTED]"
        assert model.resources[0].properties["engine"] == "postgres"

    def test_empty_input(self) -> None:
        """Test that no files raises NoFilesProvidedError."""
        with pytest.raises(NoFilesProvidedError):
            _ = IaCAnalyzer().parse_terraform([])


class TestParseTerraformPlan:
    """Tests for plan export parsing."""

    def test_plan_resources_and_module_paths(self, sample_plan_json: Path) -> None:
        """Test that root and child module resources are read."""
        model = IaCAnalyzer().parse_terraform_plan(sample_plan_json)

        by_address = {r.address: r for r in model.resources}
        assert list(by_address) == [
            "aws_s3_bucket.data",
            "aws_s3_bucket_policy.data",
            "module.network.aws_vpc.main",
        ]
        assert by_address["aws_s3_bucket.data"].module_path == ""
        assert by_address["module.network.aws_vpc.main"].module_path == "module.network"
        assert all(r.is_from_plan for r in model.resources)
        assert by_address["aws_s3_bucket.data"].properties["arn"] == "arn:aws:s3:::example-data-bucket"

    def test_plan_metadata(self, sample_plan_json: Path) -> None:
        """Test that format and Terraform versions are recorded."""
        model = IaCAnalyzer().parse_terraform_plan(sample_plan_json)

        assert model.source_type == SourceType.PLAN
        assert model.metadata["format_version"] == "1.2"
        assert model.metadata["terraform_version"] == "1.7.5"
        assert model.metadata["json_file"] == str(sample_plan_json)

    def test_state_export_values_section(self, tmp_path: Path, sample_plan_document: dict[str, Any]) -> None:
        """Test that ``values.root_module`` is accepted when planned values are absent."""
        document = {"format_version": "1.0", "values": sample_plan_document["planned_values"]}
        path = tmp_path / "state.json"
        _ = path.write_text(json.dumps(document))

        model = IaCAnalyzer().parse_terraform_plan(path)

        assert len(model.resources) == 3

    def test_root_module_path_from_address(self, tmp_path: Path) -> None:
        """Test that root-listed module resources derive their module path."""
        document = {
            "planned_values": {
                "root_module": {
                    "resources": [
                        {"address": "module.vpc.aws_subnet.a", "type": "aws_subnet", "values": {}}
                    ]
                }
            }
        }
        path = tmp_path / "plan.json"
        _ = path.write_text(json.dumps(document))

        model = IaCAnalyzer().parse_terraform_plan(path)

        assert model.resources[0].module_path == "module.vpc"

    def test_no_root_module(self, tmp_path: Path) -> None:
        """Test that a document without values yields no resources."""
        path = tmp_path / "plan.json"
        _ = path.write_text(json.dumps({"format_version": "1.2"}))

        model = IaCAnalyzer().parse_terraform_plan(path)

        assert model.resources == []

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Test that malformed JSON raises IaCParsingError."""
        path = tmp_path / "plan.json"
        _ = path.write_text("{not json")

        with pytest.raises(IaCParsingError) as exc_info:
            _ = IaCAnalyzer().parse_terraform_plan(path)

        assert exc_info.value.parse_context == "invalid JSON format"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing plan raises FileAccessError."""
        with pytest.raises(FileAccessError):
            _ = IaCAnalyzer().parse_terraform_plan(tmp_path / "missing.json")


class TestModelHelpers:
    """Tests for extract_resources, identify_relationships and merge_models."""

    def test_extract_resources_requires_model(self) -> None:
        """Test that a None model raises ValidationError."""
        with pytest.raises(ValidationError):
            _ = IaCAnalyzer().extract_resources(None)

    def test_relationships_from_hcl(self, sample_terraform_repo: Path) -> None:
        """Test that references in HCL become graph edges."""
        analyzer = IaCAnalyzer(sample_terraform_repo)
        model = analyzer.parse_terraform(analyzer.retrieve_files())

        graph = analyzer.identify_relationships(analyzer.extract_resources(model))

        assert graph.edges["aws_s3_bucket_versioning.data"] == ["aws_s3_bucket.data"]
        assert graph.edges["aws_iam_role.app"] == ["data.aws_iam_policy_document.assume"]
        assert "aws_s3_bucket.data" not in graph.edges

    def test_merge_models(self, sample_terraform_repo: Path, sample_plan_json: Path) -> None:
        """Test that the analyzer merges plan data into the HCL model."""
        analyzer = IaCAnalyzer(sample_terraform_repo)
        hcl_model = analyzer.parse_terraform(analyzer.retrieve_files())
        plan_model = analyzer.parse_terraform_plan(sample_plan_json)

        merged = analyzer.merge_models(plan_model, hcl_model)

        assert merged.source_type == SourceType.HCL_ENHANCED
        assert "aws_s3_bucket_policy.data" in {r.address for r in merged.resources}


class TestIsTerraformFile:
    """Tests for is_terraform_file."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [("main.tf", True), ("prod.tfvars", True), ("MAIN.TF", True), ("main.tf.json", False), ("plan.json", False)],
    )
    def test_extensions(self, path: str, expected: bool) -> None:
        """Test extension matching."""
        assert is_terraform_file(path) is expected
