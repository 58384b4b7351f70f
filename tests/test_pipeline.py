import json
import threading

import cv2
import numpy as np
import pytest

from sheetscan import run_pipeline
from sheetscan.config import OMRConfig
from sheetscan.errors import ErrorCode, InsufficientMarkers, OCRError
from sheetscan.ocr import OCRResult, OCRService
from sheetscan.pipelines import aggregate
from sheetscan.types import AnswerResult, AnswerStatus, Image, PipelineResult, QuestionSpec, QuestionType, Stage


class FakeOCR(OCRService):
    def __init__(self, text="hello", confidence=0.9):
        self.text = text
        self.confidence = confidence
        self.calls = 0
        self._lock = threading.Lock()

    def recognize(self, image):
        with self._lock:
            self.calls += 1
        return OCRResult(text=self.text, confidence=self.confidence)


class BrokenOCR(OCRService):
    def recognize(self, image):
        raise OCRError("engine unavailable")


class TimeoutOCR(OCRService):
    def recognize(self, image):
        raise RuntimeError("Tesseract process timeout")


class TestEndToEnd:
    def test_single_and_text(self, sheet, single_question, text_question, cfg):
        result = run_pipeline(sheet, [single_question, text_question], cfg=cfg)

        assert result.ok
        assert result.stage is Stage.PARSE
        assert len(result.answers) == 2

        a0, a1 = result.answers
        assert a0.status is AnswerStatus.SELECTED
        assert a0.selection == (2,)
        assert a1.status is AnswerStatus.UNCLASSIFIED
        assert a1.type is QuestionType.TEXT
        assert a1.region is not None
        assert a1.region.image.size == (400, 120)

    def test_geometry_and_corrected_image(self, sheet, single_question, cfg):
        result = run_pipeline(sheet, [single_question], cfg=cfg)

        assert result.geometry.kind == "perspective"
        assert result.geometry.sheet_size_px == (520, 720)
        assert result.corrected_image.size == (520, 720)
        assert len(result.markers) >= 4
        assert result.source_image.size == (600, 800)

    def test_corrected_image_can_be_skipped(self, sheet, single_question):
        result = run_pipeline(sheet, [single_question], cfg=OMRConfig(produce_corrected_image=False))
        assert result.ok
        assert result.corrected_image is None

    def test_labels_from_options(self, sheet, single_question, cfg):
        single_question["options"] = ["A", "B", "C", "D"]
        result = run_pipeline(sheet, [single_question], cfg=cfg)
        assert result.answers[0].labels == ("C",)

    def test_spec_objects_accepted(self, sheet, single_question, text_question, cfg):
        specs = [QuestionSpec.from_dict(single_question), QuestionSpec.from_dict(text_question)]
        result = run_pipeline(Image(sheet), specs, cfg=cfg)
        assert [a.status for a in result.answers] == [AnswerStatus.SELECTED, AnswerStatus.UNCLASSIFIED]

    def test_tilted_photo(self, make_sheet, single_question):
        src = np.float32([[0, 0], [600, 0], [600, 800], [0, 800]])
        dst = np.float32([[30, 40], [610, 15], [625, 820], [10, 790]])
        m = cv2.getPerspectiveTransform(src, dst)
        photo = cv2.warpPerspective(make_sheet(filled=(1,)), m, (640, 840), borderValue=255)

        result = run_pipeline(photo, [single_question], cfg=OMRConfig(marker_circularity_threshold=0.7))

        assert result.ok
        assert result.answers[0].selection == (1,)

    def test_source_image_not_modified(self, sheet, single_question, text_question, cfg):
        before = sheet.copy()
        run_pipeline(sheet, [single_question, text_question], cfg=cfg)
        assert np.array_equal(sheet, before)


class TestPerQuestionFailures:
    def test_invalid_spec_keeps_its_slot(self, sheet, single_question, text_question, cfg):
        bad = {"type": "single", "optionCount": 0, "box": dict(single_question["box"])}

        result = run_pipeline(sheet, [single_question, bad, text_question], cfg=cfg)

        assert result.ok
        assert len(result.answers) == 3
        assert result.answers[0].selection == (2,)
        assert result.answers[1].status is AnswerStatus.ERROR
        assert result.answers[1].code is ErrorCode.INVALID_QUESTION_SPEC
        assert result.answers[1].index == 1
        assert result.regions[1] is None
        assert result.answers[2].status is AnswerStatus.UNCLASSIFIED

    def test_unknown_type(self, sheet, single_question, cfg):
        result = run_pipeline(sheet, [{"type": "essay", "box": [0, 0, 0.5, 0.5]}, single_question], cfg=cfg)

        assert result.answers[0].code is ErrorCode.INVALID_QUESTION_SPEC
        assert result.answers[1].selection == (2,)

    def test_non_mapping_entry(self, sheet, cfg):
        result = run_pipeline(sheet, ["single"], cfg=cfg)
        assert result.answers[0].code is ErrorCode.INVALID_QUESTION_SPEC

    def test_region_out_of_bounds(self, sheet, single_question, cfg):
        off_sheet = {"type": "text", "box": {"x": 0.9, "y": 0.9, "w": 0.5, "h": 0.5}}

        result = run_pipeline(sheet, [off_sheet, single_question], cfg=cfg)

        assert result.answers[0].code is ErrorCode.REGION_OUT_OF_BOUNDS
        assert result.answers[1].status is AnswerStatus.SELECTED

    def test_non_finite_box(self, sheet, single_question, cfg):
        bad = {"type": "text", "box": {"x": float("nan"), "y": 0.1, "w": 0.2, "h": 0.2}}

        result = run_pipeline(sheet, [bad, single_question], cfg=cfg)

        assert result.answers[0].status is AnswerStatus.ERROR
        assert result.answers[0].code is ErrorCode.INVALID_QUESTION_SPEC
        assert result.answers[1].selection == (2,)

    def test_non_finite_box_from_template_json(self, sheet, single_question, cfg):
        entries = json.loads('[{"type": "single", "optionCount": 4, "box": [0.1, Infinity, 0.5, 0.1]}]')

        result = run_pipeline(sheet, entries + [single_question], cfg=cfg)

        assert result.answers[0].code is ErrorCode.INVALID_QUESTION_SPEC
        assert result.answers[1].status is AnswerStatus.SELECTED

    def test_unexpected_ocr_exception_is_internal(self, sheet, single_question, text_question, cfg):
        result = run_pipeline(sheet, [single_question, text_question], cfg=cfg, ocr=TimeoutOCR())

        assert result.ok
        assert len(result.answers) == 2
        assert result.answers[0].selection == (2,)
        assert result.answers[1].status is AnswerStatus.ERROR
        assert result.answers[1].code is ErrorCode.INTERNAL
        assert "timeout" in result.answers[1].error.message
        assert result.answers[1].region is not None
        assert result.answers[1].type is QuestionType.TEXT

    def test_malformed_options_is_per_question(self, sheet, single_question, cfg):
        bad = {"type": "single", "options": 5, "box": dict(single_question["box"])}

        result = run_pipeline(sheet, [bad, single_question], cfg=cfg)

        assert result.answers[0].status is AnswerStatus.ERROR
        assert result.answers[0].code is ErrorCode.INTERNAL
        assert result.answers[1].selection == (2,)


class TestWholePipelineFailures:
    def test_insufficient_markers(self, single_question, cfg):
        blank = np.full((800, 600), 255, dtype=np.uint8)
        cv2.circle(blank, (40, 40), 20, 0, -1)
        cv2.circle(blank, (560, 40), 20, 0, -1)

        result = run_pipeline(blank, [single_question], cfg=cfg)

        assert not result.ok
        assert result.error.code is ErrorCode.INSUFFICIENT_MARKERS
        assert result.answers == ()
        assert len(result.markers) == 2
        with pytest.raises(InsufficientMarkers) as exc:
            result.raise_for_error()
        assert exc.value.found == 2

    def test_ok_result_raise_for_error_returns_self(self, sheet, single_question, cfg):
        result = run_pipeline(sheet, [single_question], cfg=cfg)
        assert result.raise_for_error() is result


class TestStages:
    def test_detect_only(self, sheet, single_question, cfg):
        result = run_pipeline(sheet, [single_question], stage="detect", cfg=cfg)

        assert result.stage is Stage.DETECT
        assert len(result.markers) >= 4
        assert result.answers == ()
        assert result.geometry is None

    def test_detect_keeps_markers_when_too_few(self, single_question, cfg):
        two = np.full((800, 600), 255, dtype=np.uint8)
        cv2.circle(two, (40, 40), 20, 0, -1)
        cv2.circle(two, (560, 40), 20, 0, -1)

        result = run_pipeline(two, [single_question], stage="detect", cfg=cfg)

        assert not result.ok
        assert result.stage is Stage.DETECT
        assert result.error.code is ErrorCode.INSUFFICIENT_MARKERS
        assert len(result.markers) == 2

    def test_crop_only(self, sheet, single_question, text_question, cfg):
        result = run_pipeline(sheet, [single_question, text_question], stage=Stage.CROP, cfg=cfg)

        assert len(result.answers) == 2
        assert all(a.status is AnswerStatus.UNCLASSIFIED for a in result.answers)
        assert all(r is not None for r in result.regions)
        assert result.regions[0].image.size == (400, 80)

    def test_classify_supplied_crops(self, make_bubble_row):
        crops = [make_bubble_row(filled=(3,)), np.full((40, 200), 255, dtype=np.uint8)]
        questions = [{"type": "single", "optionCount": 4}, {"type": "text"}]

        result = run_pipeline(None, questions, stage="classify", crops=crops)

        assert result.ok
        assert result.answers[0].selection == (3,)
        assert result.answers[1].status is AnswerStatus.UNCLASSIFIED
        assert result.geometry is None

    def test_classify_requires_crops(self):
        with pytest.raises(ValueError):
            run_pipeline(None, [{"type": "text"}], stage="classify")

    def test_classify_crop_count_mismatch(self, make_bubble_row):
        with pytest.raises(ValueError):
            run_pipeline(None, [{"type": "text"}, {"type": "text"}], stage="classify", crops=[make_bubble_row()])

    def test_image_required_outside_classify(self, single_question):
        with pytest.raises(ValueError):
            run_pipeline(None, [single_question])

    def test_unknown_stage(self, sheet):
        with pytest.raises(ValueError):
            run_pipeline(sheet, [], stage="render")

    def test_no_questions(self, sheet, cfg):
        result = run_pipeline(sheet, [], cfg=cfg)
        assert result.ok
        assert result.answers == ()


class TestOrdering:
    def test_output_order_matches_input(self, sheet, single_question, text_question):
        questions = [single_question if i % 2 == 0 else text_question for i in range(12)]

        result = run_pipeline(sheet, questions, cfg=OMRConfig(max_workers=4))

        assert [a.index for a in result.answers] == list(range(12))
        for i, a in enumerate(result.answers):
            expected = AnswerStatus.SELECTED if i % 2 == 0 else AnswerStatus.UNCLASSIFIED
            assert a.status is expected

    def test_single_worker_same_answers(self, sheet, single_question, text_question):
        questions = [single_question, text_question, single_question]
        one = run_pipeline(sheet, questions, cfg=OMRConfig(max_workers=1))
        many = run_pipeline(sheet, questions, cfg=OMRConfig(max_workers=8))

        assert [a.selection for a in one.answers] == [a.selection for a in many.answers]
        assert [a.fill_ratios for a in one.answers] == [a.fill_ratios for a in many.answers]


class TestOCR:
    def test_text_and_info(self, sheet, single_question, text_question, info_question, cfg):
        ocr = FakeOCR(text="kim", confidence=0.8)

        result = run_pipeline(sheet, [single_question, text_question, info_question], cfg=cfg, ocr=ocr)

        text, info = result.answers[1], result.answers[2]
        assert text.text == "kim"
        assert text.confidence == pytest.approx(0.8)
        assert info.line_texts == ("kim", "kim")
        assert info.line_confidences == (0.8, 0.8)
        assert info.answer_text == "kim\nkim"
        # choice questions never go to OCR
        assert ocr.calls == 3

    def test_ocr_failure_is_per_question(self, sheet, single_question, text_question, cfg):
        result = run_pipeline(sheet, [single_question, text_question], cfg=cfg, ocr=BrokenOCR())

        assert result.answers[0].status is AnswerStatus.SELECTED
        assert result.answers[1].status is AnswerStatus.ERROR
        assert result.answers[1].code is ErrorCode.OCR_FAILED
        assert result.answers[1].region is not None


class TestSerialization:
    def test_bridge_dict(self, sheet, single_question, text_question, info_question, cfg):
        result = run_pipeline(sheet, [single_question, text_question, info_question], cfg=cfg, ocr=FakeOCR("x", 0.5))

        d = result.to_bridge_dict()

        assert d["version"] == "v1"
        assert d["parsedAnswers"] == ["2", "x", "x\nx"]
        assert len(d["confidenceScores"]) == 3
        assert d["rowConfidences"] == [[], [], [0.5, 0.5]]
        assert d["croppedCount"] == 3
        assert d["error"] is None

    def test_to_dict_images_as_metadata(self, sheet, single_question, cfg):
        d = run_pipeline(sheet, [single_question], cfg=cfg).to_dict()

        assert d["ok"] is True
        assert d["stage"] == "parse"
        assert d["corrected_image"] == {"width": 520, "height": 720, "channels": 1}
        assert d["answers"][0]["status"] == "selected"
        assert d["answers"][0]["region"]["image"] == {"width": 400, "height": 80, "channels": 1}

    def test_failed_to_dict(self, cfg):
        blank = np.full((800, 600), 255, dtype=np.uint8)
        d = run_pipeline(blank, [{"type": "text"}], cfg=cfg).to_dict()

        assert d["ok"] is False
        assert d["error"]["code"] == "insufficient_markers"


class TestAggregate:
    def test_pads_missing_answers(self):
        result = aggregate(Stage.PARSE, expected=3, answers=[AnswerResult.failed(0, OCRError("x"))])

        assert isinstance(result, PipelineResult)
        assert len(result.answers) == 3
        assert len(result.regions) == 3
        assert [a.index for a in result.answers] == [0, 1, 2]
        assert result.answers[2].code is ErrorCode.INTERNAL

    def test_exception_becomes_failed_result(self):
        exc = InsufficientMarkers(found=1, required=4)
        result = aggregate(Stage.PARSE, expected=2, exception=exc)

        assert not result.ok
        assert result.exception is exc
        assert result.answers == ()
