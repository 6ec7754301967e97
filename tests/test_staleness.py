import asyncio
import random

import pytest

from synthnote.errors import NetworkError, RequestTimeout
from synthnote.schemas import PipelineState
from tests.fakes import FakeCloudModel, FakeLocalModel


async def _drain() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(30))
async def test_only_latest_query_proposals_are_ever_visible(controller_factory, seed):
    rng = random.Random(seed)
    local = FakeLocalModel(gated=True)
    controller, local, _, _ = controller_factory(local=local)
    count = rng.randint(2, 6)
    for idx in range(count):
        controller.submit(f"query {idx}")
    await local.wait_for_calls(count)

    order = list(range(count))
    rng.shuffle(order)
    latest = count - 1
    for idx in order:
        if idx != latest and rng.random() < 0.3:
            outcome = rng.choice([NetworkError("refused"), RequestTimeout("slow")])
        else:
            outcome = [f"answer {idx}"]
        local.resolve(idx, outcome)
        await _drain()
        snap = controller.snapshot()
        if snap.proposals is not None:
            assert snap.proposals.query_seq == count
            assert [p.text for p in snap.proposals.proposals] == [f"answer {latest}"]
        assert snap.last_error is None

    await controller.settle()
    snap = controller.snapshot()
    assert snap.state is PipelineState.PROPOSALS_READY
    assert snap.query.text == f"query {latest}"
    assert snap.query.seq == count


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(10))
async def test_stale_failure_never_overrides_latest_success(controller_factory, seed):
    rng = random.Random(seed)
    local = FakeLocalModel(gated=True)
    controller, local, _, _ = controller_factory(local=local)
    controller.submit("old question")
    controller.submit("new question")
    await local.wait_for_calls(2)

    resolutions = [(0, NetworkError("refused")), (1, ["fresh angle"])]
    rng.shuffle(resolutions)
    for idx, outcome in resolutions:
        local.resolve(idx, outcome)
        await _drain()

    await controller.settle()
    snap = controller.snapshot()
    assert snap.state is PipelineState.PROPOSALS_READY
    assert snap.last_error is None
    assert snap.proposals.proposals[0].text == "fresh angle"


@pytest.mark.asyncio
async def test_late_synthesis_for_superseded_query_is_dropped(controller_factory):
    cloud = FakeCloudModel(gated=True)
    local = FakeLocalModel(gated=True)
    controller, local, cloud, _ = controller_factory(local=local, cloud=cloud)

    controller.submit("first question")
    await local.wait_for_calls(1)
    local.resolve(0, ["first angle"])
    await _drain()
    controller.select(0)
    await cloud.wait_for_calls(1)

    controller.submit("second question")
    await local.wait_for_calls(2)
    cloud.resolve(0, ("stale body", ["stale"]))
    await _drain()
    snap = controller.snapshot()
    assert snap.state is PipelineState.AWAITING_PROPOSALS
    assert snap.synthesis is None
    assert snap.selection is None

    local.resolve(1, ["second angle"])
    await controller.settle()
    snap = controller.snapshot()
    assert snap.state is PipelineState.PROPOSALS_READY
    assert snap.proposals.query_seq == 2
    assert snap.proposals.proposals[0].text == "second angle"


@pytest.mark.asyncio
async def test_reselect_after_cancel_ignores_first_synthesis(controller_factory):
    cloud = FakeCloudModel(gated=True)
    controller, _, cloud, _ = controller_factory(cloud=cloud)
    controller.submit("why is the sky blue")
    await controller.settle()

    controller.select(0)
    await cloud.wait_for_calls(1)
    controller.cancel()
    controller.select(1)
    await cloud.wait_for_calls(2)

    cloud.resolve(0, ("old body", ["old"]))
    await _drain()
    assert controller.state is PipelineState.AWAITING_SYNTHESIS
    assert controller.snapshot().synthesis is None

    cloud.resolve(1, ("new body", ["new"]))
    await controller.settle()
    snap = controller.snapshot()
    assert snap.state is PipelineState.SYNTHESIS_READY
    assert snap.synthesis.body == "new body"
    assert snap.synthesis.proposal_id == 1


@pytest.mark.asyncio
async def test_retry_after_timeout_applies_fresh_response(controller_factory):
    local = FakeLocalModel(gated=True)
    controller, local, _, _ = controller_factory(local=local)
    controller.submit("why is the sky blue")
    await local.wait_for_calls(1)
    local.resolve(0, RequestTimeout("slow"))
    await _drain()
    assert controller.last_error.kind == "Timeout"

    controller.retry()
    await local.wait_for_calls(2)
    local.resolve(1, ["angle"])
    await controller.settle()
    snap = controller.snapshot()
    assert snap.state is PipelineState.PROPOSALS_READY
    assert snap.last_error is None
