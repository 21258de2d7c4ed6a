import pytest

from stepwise.executor.drift import DriftClassifier, is_leeway_file, severity_for
from stepwise.executor.schemas import DriftCategory, Severity


@pytest.mark.parametrize(
    "yellow, red, expected",
    [
        (0, 0, Severity.NONE),
        (1, 0, Severity.MINOR),
        (2, 0, Severity.MINOR),
        (3, 0, Severity.MODERATE),
        (4, 0, Severity.MODERATE),
        (5, 0, Severity.MAJOR),
        (0, 1, Severity.MODERATE),
        (2, 1, Severity.MODERATE),
        (0, 2, Severity.MAJOR),
    ],
)
def test_severity_cascade(yellow, red, expected):
    assert severity_for(yellow, red) == expected


def test_only_moderate_and_major_require_confirmation():
    assert not Severity.MINOR.requires_confirmation
    assert Severity.MODERATE.requires_confirmation
    assert Severity.MAJOR.requires_confirmation


@pytest.mark.parametrize(
    "path",
    ["tests/test_app.py", "src/app_test.go", "docs/guide.rst", "README.md", "config/settings.yaml", "web/app.spec.ts"],
)
def test_leeway_files(path):
    assert is_leeway_file(path)


def test_regular_source_is_not_leeway():
    assert not is_leeway_file("src/app/models.py")


def test_expected_changes_are_not_drift():
    assessment = DriftClassifier().classify(["src/app.py"], ["./src/app.py"])
    assert assessment.severity == Severity.NONE
    assert assessment.unexpected_changes == []


def test_yellow_for_nearby_files():
    assessment = DriftClassifier().classify(
        ["src/app/models.py"],
        ["src/app/models.py", "src/app/views.py", "src/setup_hooks.py", "src/app/api/routes.py"],
    )

    categories = {c.file: c.category for c in assessment.unexpected_changes}
    assert categories == {
        "src/app/views.py": DriftCategory.YELLOW,
        "src/setup_hooks.py": DriftCategory.YELLOW,
        "src/app/api/routes.py": DriftCategory.YELLOW,
    }
    assert assessment.budget.yellow_used == 3
    assert assessment.severity == Severity.MODERATE


def test_red_for_unrelated_files():
    assessment = DriftClassifier().classify(["src/app/models.py"], ["billing/invoice.py"])

    [change] = assessment.unexpected_changes
    assert change.category == DriftCategory.RED
    assert assessment.budget.red_used == 1
    assert assessment.budget.score == 2
    assert assessment.severity == Severity.MODERATE


def test_single_leeway_yellow_is_forgiven():
    assessment = DriftClassifier().classify(["src/app.py"], ["src/app.py", "src/app.yaml"])

    [change] = assessment.unexpected_changes
    assert change.leeway
    assert assessment.budget.yellow_used == 0
    assert assessment.severity == Severity.NONE


def test_leeway_yellow_counts_half():
    changes = ["src/a.json", "src/b.json", "src/c.json", "src/d.json", "src/other.py"]
    assessment = DriftClassifier().classify(["src/app.py"], changes)
    assert assessment.budget.yellow_used == 3


def test_red_gets_no_leeway():
    assessment = DriftClassifier().classify(["src/app.py"], ["docs/far/away/notes.md", "infra/deploy.yaml"])
    assert assessment.budget.red_used == 2
    assert assessment.severity == Severity.MAJOR


def test_classification_is_deterministic():
    classifier = DriftClassifier()
    args = (["src/app.py"], ["src/app.py", "src/util.py", "lib/other.py"])
    results = {classifier.classify(*args).severity for _ in range(5)}
    assert results == {Severity.MODERATE}


def test_note_mentions_confirmation_and_coherence():
    assessment = DriftClassifier().classify(
        ["src/app.py"],
        ["billing/invoice.py"],
        approach="Add invoice totals to the billing module",
    )
    assert "consistent with the stated approach" in assessment.note
    assert "requires confirmation" in assessment.note


def test_sibling_directory_is_yellow():
    assessment = DriftClassifier().classify(["src/api/routes.py"], ["src/api/routes.py", "src/db/models.py"])

    [change] = assessment.unexpected_changes
    assert change.category == DriftCategory.YELLOW
    assert "sibling" in change.reason
    assert assessment.budget.red_used == 0
    assert assessment.severity == Severity.MINOR


def test_top_level_directories_are_not_siblings():
    assessment = DriftClassifier().classify(["src/app.py"], ["lib/other.py"])

    [change] = assessment.unexpected_changes
    assert change.category == DriftCategory.RED
