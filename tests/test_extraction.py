from __future__ import annotations

import asyncio
import json

import httpx
import openai
import pytest

from exampipe.extraction import ExtractionClient, build_instruction
from exampipe.models import PageRange
from exampipe.repair import RepairStage

from fakes import TOPIC_A, make_llm


def _extract(outputs: list, page_range: PageRange = PageRange(1, 3)):
    llm, responses = make_llm(outputs, max_attempts=2)
    client = ExtractionClient(llm)
    result = asyncio.run(client.extract(b"%PDF-1.4", build_instruction("structured"), [TOPIC_A], page_range))
    return result, responses


def test_clean_output_becomes_records() -> None:
    output = json.dumps({"questions": [{"question_number": 1, "content": "a"}, {"question_number": 2, "content": "b"}]})

    result, responses = _extract([output])

    assert result.ok
    assert result.repair_stage is RepairStage.DIRECT
    assert [r.question_number for r in result.records] == [1, 2]
    assert TOPIC_A in responses.calls[0]["input"][0]["content"][0]["text"]


def test_records_carry_the_batch_offset() -> None:
    output = json.dumps([{"question_number": 9}])

    result, _ = _extract([output], PageRange(11, 20))

    assert result.records[0].batch_offset == 10


def test_unparseable_output_is_a_parse_failure_with_no_records() -> None:
    result, _ = _extract(["Sorry, I cannot read this document."])

    assert not result.ok
    assert result.failure.kind == "parse"
    assert result.records == []


def test_exhausted_retries_are_an_upstream_failure() -> None:
    error = openai.APIConnectionError(message="down", request=httpx.Request("POST", "https://api.example.com"))

    result, responses = _extract([error, error])

    assert result.failure.kind == "upstream"
    assert result.records == []
    assert len(responses.calls) == 2


def test_instructions_differ_per_category() -> None:
    assert "multiple-choice" in build_instruction("mcq")
    assert "structured" in build_instruction("structured")
    assert build_instruction(None) == build_instruction("structured")


def test_malformed_fields_do_not_abort_the_batch() -> None:
    output = '{"questions": [{"question_number": 1, "blocks": 5}, {"question_number": 1e999}, {"question_number": 2}]}'

    result, _ = _extract([output])

    assert result.ok
    assert [r.question_number for r in result.records] == [1, 2]


def test_adapter_errors_become_a_shape_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(*_args, **_kwargs):
        raise TypeError("unexpected nesting")

    monkeypatch.setattr("exampipe.extraction.adapt_records", broken)

    result, _ = _extract(['{"questions": []}'])

    assert not result.ok
    assert result.failure.kind == "shape"
    assert result.records == []
    assert result.repair_stage is RepairStage.DIRECT
