"""
AnimationResolver unit tests

- known basic_animations fields and their priority
- recursive scan fallback and its candidate predicate
- concurrent animation jobs with independent outcomes
"""

import pytest

from integrations.meshy_client import AnimationLibrary, MeshyAPIError, Stage
from services.animation_resolver import (
    AnimationResolver,
    AnimationUrls,
    BasicAnimations,
    classify_animation_candidate,
    scan_for_animation_urls,
)

from conftest import RUN_URL, WALK_URL, FakeMeshyClient, make_task, succeeded

RUN_ARMATURE_URL = "https://assets.meshy.ai/tasks/rig-task/Animation_Running_armature.glb"


@pytest.fixture
def resolver(fake_client, poller_factory):
    return AnimationResolver(fake_client, poller_factory)


class TestKnownFields:
    """basic_animations on the rigging result"""

    async def test_running_armature_only(self, resolver, fake_client):
        payload = {"result": {"basic_animations": {"running_armature_glb_url": RUN_ARMATURE_URL}}}

        urls = await resolver.resolve("rig-task", payload)

        assert urls.to_dict() == {"running": RUN_ARMATURE_URL}
        assert fake_client.submitted == []

    async def test_armature_variant_preferred(self, resolver):
        payload = {"result": {"basic_animations": {
            "running_glb_url": RUN_URL,
            "running_armature_glb_url": RUN_ARMATURE_URL,
            "walking_glb_url": WALK_URL,
        }}}

        urls = await resolver.resolve("rig-task", payload)

        assert urls == AnimationUrls(running=RUN_ARMATURE_URL, walking=WALK_URL)

    def test_accepts_bare_result_object(self):
        basic = BasicAnimations.from_result({"basic_animations": {"walking_glb_url": WALK_URL}})

        assert basic.urls().to_dict() == {"walking": WALK_URL}

    def test_missing_or_empty_block(self):
        assert BasicAnimations.from_result({"result": {}}) is None
        assert BasicAnimations.from_result({"result": {"basic_animations": {}}}) is None


class TestCandidateScan:
    """Fallback scan over the whole result tree"""

    @pytest.mark.parametrize("key,value,expected", [
        ("running_url", RUN_URL, "running"),
        ("walk", WALK_URL + "?Signature=x", "walking"),
        ("animation_glb", RUN_URL, "running"),
        ("anim_url", "https://cdn.example.com/clips/Walking.glb", "walking"),
        ("run_walk_blend", RUN_URL, None),
        ("anim_url", "https://cdn.example.com/clips/idle.glb", None),
        ("running_url", "https://cdn.example.com/clips/run.fbx", None),
        ("thumbnail", RUN_URL, None),
        ("running_url", 42, None),
    ])
    def test_classify_animation_candidate(self, key, value, expected):
        assert classify_animation_candidate(key, value) == expected

    def test_scan_finds_nested_urls(self):
        tree = {
            "result": {
                "outputs": [
                    {"preview": "https://cdn.example.com/p.png"},
                    {"clips": {"walk_anim": WALK_URL, "run_anim": RUN_URL}},
                ]
            }
        }

        assert scan_for_animation_urls(tree) == AnimationUrls(running=RUN_URL, walking=WALK_URL)

    def test_first_match_per_kind_wins(self):
        tree = {"a": {"running": RUN_URL}, "b": {"running": "https://cdn.example.com/other_run.glb"}}

        assert scan_for_animation_urls(tree).running == RUN_URL

    async def test_resolver_uses_scan_when_known_fields_absent(self, resolver, fake_client):
        payload = {"result": {"extras": {"walking_clip": WALK_URL}}}

        urls = await resolver.resolve("rig-task", payload)

        assert urls.to_dict() == {"walking": WALK_URL}
        assert fake_client.submitted == []


class TestAnimationJobs:
    """Explicit running/walking jobs against the rigging task"""

    async def test_creates_both_jobs_when_nothing_found(self, resolver, fake_client):
        fake_client.script(f"anim-{AnimationLibrary.RUN}", make_task("SUCCEEDED", result={"animation_glb_url": RUN_URL}))
        fake_client.script(f"anim-{AnimationLibrary.WALK}", make_task("SUCCEEDED", result={"animation_glb_url": WALK_URL}))

        urls = await resolver.resolve("rig-task", {"result": {}})

        assert urls == AnimationUrls(running=RUN_URL, walking=WALK_URL)
        action_ids = sorted(params["action_id"] for stage, params in fake_client.submitted)
        assert action_ids == [93, 94]
        assert all(params["rig_task_id"] == "rig-task" for _, params in fake_client.submitted)

    async def test_running_times_out_walking_succeeds(self, resolver, fake_client, config):
        fake_client.script(f"anim-{AnimationLibrary.WALK}", succeeded(WALK_URL))

        urls = await resolver.create_animations("rig-task")

        assert urls.to_dict() == {"walking": WALK_URL}
        assert fake_client.status_calls.count("anim-94") == config.poll_max_attempts

    async def test_running_fails_walking_succeeds(self, resolver, fake_client):
        fake_client.script("anim-94", make_task("FAILED", error="rig not compatible"))
        fake_client.script("anim-93", succeeded(WALK_URL))

        urls = await resolver.create_animations("rig-task")

        assert urls == AnimationUrls(running=None, walking=WALK_URL)

    async def test_submission_errors_leave_clips_empty(self, resolver, fake_client):
        fake_client.submit_errors[Stage.ANIMATION] = MeshyAPIError(402, "Insufficient credits")

        urls = await resolver.create_animations("rig-task")

        assert urls.is_empty
