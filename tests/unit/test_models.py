"""
Unit tests for the data model.

Tests cover pillar parsing, review scope validation, session
serialisation round trips and graph index rebuilding.
"""

import pytest

from waffle.errors import PillarRequiredError, QuestionIDRequiredError, ValidationError
from waffle.models import (
    ALL_PILLARS,
    Checkpoint,
    Pillar,
    QuestionEvaluation,
    ResourceGraph,
    ReviewResults,
    ReviewScope,
    ReviewSession,
    ScopeLevel,
    SemanticRelationship,
    SessionStatus,
    WorkloadModel,
    parse_pillar,
)


class TestPillar:
    """Tests for Pillar and parse_pillar."""

    def test_six_pillars(self) -> None:
        """Test that exactly six pillars exist."""
        assert len(ALL_PILLARS) == 6

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("security", Pillar.SECURITY),
            ("Security", Pillar.SECURITY),
            ("costOptimization", Pillar.COST_OPTIMIZATION),
            ("cost-optimization", Pillar.COST_OPTIMIZATION),
            ("operational_excellence", Pillar.OPERATIONAL_EXCELLENCE),
            ("performance-efficiency", Pillar.PERFORMANCE),
            (" sustainability ", Pillar.SUSTAINABILITY),
        ],
    )
    def test_parse_pillar_aliases(self, value: str, expected: Pillar) -> None:
        """Test that common spellings map to the right pillar."""
        assert parse_pillar(value) == expected

    def test_parse_pillar_unknown_raises(self) -> None:
        """Test that an unknown pillar raises ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            _ = parse_pillar("speed")

        assert exc_info.value.field == "pillar"

    def test_wafr_id_and_docs_path(self) -> None:
        """Test that API ids and documentation paths differ where expected."""
        assert Pillar.PERFORMANCE.wafr_id == "performance"
        assert Pillar.PERFORMANCE.docs_path == "performance-efficiency"
        assert Pillar.COST_OPTIMIZATION.docs_path == "cost-optimization"


class TestReviewScope:
    """Tests for ReviewScope validation."""

    def test_workload_scope_is_valid(self) -> None:
        """Test that workload scope needs no extra fields."""
        ReviewScope.workload().validate_scope()

    def test_pillar_scope_requires_pillar(self) -> None:
        """Test that pillar scope without a pillar raises."""
        with pytest.raises(PillarRequiredError):
            ReviewScope(level=ScopeLevel.PILLAR).validate_scope()

    def test_question_scope_requires_question_id(self) -> None:
        """Test that question scope with a blank id raises."""
        with pytest.raises(QuestionIDRequiredError):
            ReviewScope.for_question("  ").validate_scope()

    def test_describe(self) -> None:
        """Test human-readable scope descriptions."""
        assert ReviewScope.workload().describe() == "workload (all pillars)"
        assert ReviewScope.for_pillar(Pillar.SECURITY).describe() == "pillar (security)"
        assert ReviewScope.for_question("sec_1").describe() == "question (sec_1)"


class TestReviewSessionSerialisation:
    """Tests for JSON round trips of sessions."""

    def test_round_trip_preserves_everything(
        self,
        sample_workload_model: WorkloadModel,
        sample_evaluation: QuestionEvaluation,
    ) -> None:
        """Test that a full session survives dump and reload."""
        session = ReviewSession(
            session_id="abc-123",
            workload_id="my-app",
            aws_workload_id="wl-123",
            scope=ReviewScope.for_pillar(Pillar.SECURITY),
            status=SessionStatus.IN_PROGRESS,
            checkpoint=Checkpoint.QUESTIONS_EVALUATED,
            workload_model=sample_workload_model,
            questions=[sample_evaluation.question],
            evaluations=[sample_evaluation],
            results=ReviewResults(evaluations=[sample_evaluation]),
        )

        reloaded = ReviewSession.model_validate_json(session.model_dump_json())

        assert reloaded == session
        assert reloaded.checkpoint == Checkpoint.QUESTIONS_EVALUATED
        assert reloaded.scope.pillar == Pillar.SECURITY

    def test_graph_nodes_rebuilt_after_reload(self, sample_workload_model: WorkloadModel) -> None:
        """Test that graph nodes are re-indexed from resources on load."""
        model = sample_workload_model.model_copy(deep=True)
        model.relationships = ResourceGraph(
            nodes={r.address: r for r in model.resources},
            edges={"aws_s3_bucket_versioning.data": ["aws_s3_bucket.data"]},
        )

        reloaded = WorkloadModel.model_validate_json(model.model_dump_json())

        assert reloaded.relationships is not None
        assert reloaded.relationships.contains("aws_s3_bucket.data")
        assert reloaded.relationships.edges == {"aws_s3_bucket_versioning.data": ["aws_s3_bucket.data"]}

    def test_unset_checkpoint_is_empty_string(self) -> None:
        """Test that a new session has the empty checkpoint."""
        session = ReviewSession(session_id="s1", workload_id="w")

        assert session.checkpoint == Checkpoint.NONE
        assert session.checkpoint.value == ""
        assert session.status == SessionStatus.CREATED


class TestSemanticRelationship:
    """Tests for the aliased ``from`` field."""

    def test_accepts_from_alias(self) -> None:
        """Test that the JSON key ``from`` populates ``from_``."""
        relationship = SemanticRelationship.model_validate(
            {"from": "aws_s3_bucket.data", "to": "aws_kms_key.data", "type": "encryption"}
        )

        assert relationship.from_ == "aws_s3_bucket.data"
        assert relationship.model_dump(by_alias=True)["from"] == "aws_s3_bucket.data"
