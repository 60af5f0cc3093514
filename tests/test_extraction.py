"""Tests for provider payload extraction."""

import json

import pytest

from fanverse_studio.providers.extraction import (
    OUTCOME_AMBIGUOUS,
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    GenericResultExtractor,
    KieJobExtractor,
    find_media_url,
)


class TestFindMediaUrl:
    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"image_url": "https://cdn.test/a.png"}, "https://cdn.test/a.png"),
            ({"output": {"videoUrl": "https://cdn.test/v.mp4"}}, "https://cdn.test/v.mp4"),
            ({"result": {"url": "https://cdn.test/r.webp"}}, "https://cdn.test/r.webp"),
            ({"data": {"images": [{"url": "https://cdn.test/d.jpg"}]}}, "https://cdn.test/d.jpg"),
            ({"resultUrls": ["https://cdn.test/first.png", "https://cdn.test/second.png"]}, "https://cdn.test/first.png"),
            ({"deep": {"nested": ["see https://cdn.test/deep.gif?x=1"]}}, "https://cdn.test/deep.gif?x=1"),
        ],
    )
    def test_known_shapes(self, payload: dict, expected: str) -> None:
        assert find_media_url(payload) == expected

    def test_output_wins_over_top_level(self) -> None:
        payload = {"url": "https://cdn.test/top.png", "output": {"url": "https://cdn.test/output.png"}}

        assert find_media_url(payload) == "https://cdn.test/output.png"

    def test_non_http_values_ignored(self) -> None:
        assert find_media_url({"image": "data:image/png;base64,AAAA"}) is None


class TestGenericResultExtractor:
    extractor = GenericResultExtractor()

    def test_url_wins_over_error_status(self) -> None:
        result = self.extractor.extract({"status": "failed", "image_url": "https://cdn.test/a.png"})

        assert result.outcome == OUTCOME_COMPLETED
        assert result.result_url == "https://cdn.test/a.png"

    def test_failed_status_uses_message(self) -> None:
        result = self.extractor.extract({"status": "error", "message": "content policy"})

        assert result.outcome == OUTCOME_FAILED
        assert result.error_message == "content policy"

    def test_error_object_is_serialized(self) -> None:
        result = self.extractor.extract({"error": {"code": 42}})

        assert result.outcome == OUTCOME_FAILED
        assert json.loads(result.error_message or "") == {"code": 42}

    def test_completed_status_without_url(self) -> None:
        result = self.extractor.extract({"status": "SUCCEEDED"})

        assert result.outcome == OUTCOME_COMPLETED
        assert result.result_url is None

    @pytest.mark.parametrize("payload", [{}, {"status": "queued"}, {"progress": 10}, ["not", "a", "dict"]])
    def test_ambiguous(self, payload) -> None:
        result = self.extractor.extract(payload)

        assert result.outcome == OUTCOME_AMBIGUOUS
        assert result.is_terminal is False


class TestKieJobExtractor:
    extractor = KieJobExtractor()

    def test_success_record(self) -> None:
        payload = {
            "code": 200,
            "data": {
                "taskId": "t1",
                "state": "success",
                "resultJson": json.dumps({"resultUrls": ["https://cdn.test/kie.png"]}),
            },
        }

        result = self.extractor.extract(payload)

        assert result.outcome == OUTCOME_COMPLETED
        assert result.result_url == "https://cdn.test/kie.png"

    def test_fail_record(self) -> None:
        payload = {"code": 501, "data": {"taskId": "t1", "state": "fail", "failMsg": "Internal error"}}

        result = self.extractor.extract(payload)

        assert result.outcome == OUTCOME_FAILED
        assert result.error_message == "Internal error"

    @pytest.mark.parametrize("state", ["waiting", "queuing", "generating"])
    def test_in_progress_states(self, state: str) -> None:
        result = self.extractor.extract({"code": 200, "data": {"taskId": "t1", "state": state}})

        assert result.outcome == OUTCOME_AMBIGUOUS

    def test_unparsable_result_json_on_success(self) -> None:
        result = self.extractor.extract({"data": {"state": "success", "resultJson": "{not json"}})

        assert result.outcome == OUTCOME_COMPLETED
        assert result.result_url is None

    def test_other_shapes_fall_back_to_generic(self) -> None:
        result = self.extractor.extract({"output": {"video_url": "https://cdn.test/clip.mov"}})

        assert result.outcome == OUTCOME_COMPLETED
        assert result.result_url == "https://cdn.test/clip.mov"
