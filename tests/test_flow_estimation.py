"""
Unit tests for flow counting and metadata-based flow estimation.
"""

import pytest

from mule_consumption_analyzer import (
    Application,
    count_flows,
    estimate_from_metadata,
    extract_flow_counts,
)

CORE_NS = "http://www.mulesoft.org/schema/mule/core"
BATCH_NS = "http://www.mulesoft.org/schema/mule/batch"


def mule_config(body: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<mule xmlns="{CORE_NS}" xmlns:batch="{BATCH_NS}">\n{body}\n</mule>\n'
    )


MAIN_CONFIG = mule_config("""
    <flow name="get-orders">
        <flow-ref name="lookup"/>
        <async><logger message="fire"/></async>
    </flow>
    <flow name="post-orders">
        <until-successful maxRetries="3"><logger/></until-successful>
        <scatter-gather><route><logger/></route><route><logger/></route></scatter-gather>
    </flow>
    <sub-flow name="lookup"><logger/></sub-flow>
    <batch:job jobName="nightly">
        <batch:process-records><batch:step name="one"/></batch:process-records>
    </batch:job>
""")


class TestMetadataEstimator:
    """Tests for estimate_from_metadata."""

    def test_no_metadata_returns_default(self):
        """Missing metadata yields the base estimate."""
        result = estimate_from_metadata(None)
        assert result.estimated_flows == 2
        assert result.confidence == "low"
        assert result.source == "Default estimate (no metadata)"

    def test_eapi_filename_with_salesforce(self):
        """EAPI file name plus Salesforce integration adds up to 7."""
        app = Application(domain="anything", file_name="customer-eapi-salesforce-v1.jar", worker_count=1)
        result = estimate_from_metadata(app)
        assert result.estimated_flows == 7
        assert result.confidence == "low"
        assert result.source == "EAPI filename pattern + Salesforce pattern"

    def test_papi_domain_with_database(self):
        """Domain is used when there is no file name."""
        app = Application(domain="order-papi-database", worker_count=1, worker_weight=0)
        result = estimate_from_metadata(app)
        assert result.estimated_flows == 8
        assert result.source == "PAPI domain pattern + Database pattern"

    def test_filename_takes_precedence_over_domain(self):
        """The domain is ignored when a file name is present."""
        app = Application(domain="orders-process-api", file_name="orders-sapi.jar")
        result = estimate_from_metadata(app)
        assert result.estimated_flows == 3
        assert result.source == "SAPI filename pattern"

    def test_domain_only_terms_do_not_match_file_name(self):
        """'experience' alone only counts for domains."""
        by_file = estimate_from_metadata(Application(domain="x", file_name="experience.jar"))
        by_domain = estimate_from_metadata(Application(domain="experience-layer"))
        assert by_file.estimated_flows == 2
        assert by_domain.estimated_flows == 5

    def test_only_first_integration_bonus_applies(self):
        """Salesforce wins over database and splunk."""
        app = Application(domain="sfdc-database-splunk")
        result = estimate_from_metadata(app)
        assert result.estimated_flows == 4
        assert result.source == "Application metadata + Salesforce pattern"

    def test_splunk_bonus(self):
        app = Application(domain="log-splunk")
        assert estimate_from_metadata(app).estimated_flows == 3

    def test_worker_bonuses(self):
        """Worker count and size each add at most 3."""
        app = Application(domain="plain", worker_count=2, worker_weight=0.2)
        result = estimate_from_metadata(app)
        assert result.estimated_flows == 2 + 1 + 2
        assert result.source == "Application metadata + Multiple workers + Larger worker size"

        big = Application(domain="plain", worker_count=8, worker_weight=4)
        assert estimate_from_metadata(big).estimated_flows == 2 + 3 + 3

    def test_weight_at_threshold_adds_nothing(self):
        app = Application(domain="plain", worker_weight=0.1)
        assert estimate_from_metadata(app).estimated_flows == 2

    def test_estimate_is_capped(self):
        """Heuristic estimates stay within [1, 20]."""
        app = Application(domain="p", file_name="papi-salesforce.jar", worker_count=10, worker_weight=16)
        result = estimate_from_metadata(app)
        assert 1 <= result.estimated_flows <= 20
        assert result.estimated_flows == 7 + 2 + 3 + 3


class TestExtractFlowCounts:
    """Tests for structured extraction from deployment archives."""

    def test_counts_flows_subflows_and_scopes(self, make_jar):
        jar = make_jar({"main.xml": MAIN_CONFIG})
        counts = extract_flow_counts(jar)
        assert counts == {"flows": 2, "sub_flows": 1, "other": 4}

    def test_sums_across_configs_and_ignores_pom_and_non_mule(self, make_jar):
        jar = make_jar({
            "main.xml": MAIN_CONFIG,
            "api/extra.xml": mule_config('<flow name="x"/>'),
            "META-INF/maven/pom.xml": mule_config('<flow name="ignored"/>'),
            "log4j2.xml": "<Configuration><flow/></Configuration>",
            "broken.xml": "<mule><flow>",
        })
        counts = extract_flow_counts(jar)
        assert counts == {"flows": 3, "sub_flows": 1, "other": 4}

    def test_returns_none_without_mule_configs(self, make_jar):
        jar = make_jar({"log4j2.xml": "<Configuration/>", "app.properties": "a=b"})
        assert extract_flow_counts(jar) is None


class TestCountFlows:
    """Tests for the artifact flow counter and its fallbacks."""

    def test_no_artifact_delegates_to_metadata(self):
        app = Application(domain="order-papi-database")
        assert count_flows(None, app) == estimate_from_metadata(app)

    def test_structured_extraction_is_high_confidence(self, make_jar, tmp_path):
        jar_path = tmp_path / "app.jar"
        jar_path.write_bytes(make_jar({"main.xml": MAIN_CONFIG}))
        result = count_flows(str(jar_path), Application(domain="x"))
        assert result.estimated_flows == 7
        assert result.confidence == "high"
        assert result.source == "XML analysis"
        assert result.actual_analysis is True
        assert result.size.endswith(" MB")

    def test_empty_mule_config_counts_zero(self, make_jar):
        result = count_flows(make_jar({"main.xml": mule_config("")}), None)
        assert result.estimated_flows == 0
        assert result.confidence == "high"

    def test_corrupt_archive_uses_size_heuristic(self):
        """A 2.3 MB artifact that is not a readable archive maps to 5 flows."""
        artifact = b"x" * int(2.3 * 1024 * 1024)
        result = count_flows(artifact, Application(domain="customer-eapi-salesforce"))
        assert result.estimated_flows == 5
        assert result.confidence == "low"
        assert result.source == "JAR size heuristic"
        assert result.size == "2.30 MB"
        assert result.actual_analysis is False

    def test_archive_without_configs_uses_size_not_metadata(self, make_jar):
        jar = make_jar({"app.properties": "a=b"}, padding=6 * 1024 * 1024)
        result = count_flows(jar, Application(domain="order-papi-database"))
        assert result.source == "JAR size heuristic"
        assert result.estimated_flows == 12

    @pytest.mark.parametrize("size_bytes,expected", [
        (1, 1),
        (11 * 1024 * 1024, 20),
    ])
    def test_size_heuristic_is_clamped(self, size_bytes, expected):
        result = count_flows(b"\0" * size_bytes, None)
        assert result.estimated_flows == expected

    def test_unreadable_path_falls_back_to_metadata(self, tmp_path):
        app = Application(domain="customer-eapi")
        result = count_flows(str(tmp_path / "missing.jar"), app)
        assert result == estimate_from_metadata(app)
