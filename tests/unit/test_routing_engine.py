"""
Routing engine tests: model decisions, hallucination filtering, retries,
heuristic fallback, cross-chat candidates and the capability profile.
"""

import asyncio
import json
import logging

import pytest
from langchain_core.messages import AIMessage
from langchain_core.runnables import RunnableLambda

from graph.config import with_overrides
from graph.errors import TopicPersistenceError
from graph.models import Conversation
from graph.pipeline import build_components
from graph.prompts import SECOND_TRY_NUDGE
from graph.router import RouterContext, extract_keywords
from providers.structured import StructuredChat
from tests.utils import FailingStore, FakeEmbeddings, FakeRoutingModel, make_artifact, make_message, make_topic


def new_reply(label, description="Planning a trip.", summary="Trip planning.", **kw):
    reply = {
        "topicAction": "new",
        "primaryTopicId": None,
        "secondaryTopicIds": [],
        "newParentTopicId": None,
        "newTopicLabel": label,
        "newTopicDescription": description,
        "newTopicSummary": summary,
        "artifactsToLoad": [],
    }
    reply.update(kw)
    return reply


def existing_reply(action, primary, **kw):
    reply = {
        "topicAction": action,
        "primaryTopicId": primary,
        "secondaryTopicIds": [],
        "newParentTopicId": None,
        "newTopicLabel": "",
        "newTopicDescription": "",
        "newTopicSummary": "",
        "artifactsToLoad": [],
    }
    reply.update(kw)
    return reply


def capability_reply(base, model="mini", effort="low", memory=None):
    return dict(base, model=model, effort=effort, memoryTypesToLoad=memory or [])


class TestTopicDecisions:

    @pytest.mark.asyncio
    async def test_first_message_creates_root_topic(self, components, routing_model, store):
        routing_model.replies = [new_reply("Japan Trip Planning")]
        decision = await components.engine.decide("conv-1", "I want to plan a trip to Japan in April")

        assert decision.topic_action == "new"
        assert decision.routed_by == "llm"
        assert decision.primary_topic_id
        topics = await store.list_topics("conv-1")
        assert len(topics) == 1
        assert topics[0].id == decision.primary_topic_id
        assert topics[0].label == "Japan Trip Planning"
        assert topics[0].parent_topic_id is None
        assert topics[0].summary == "Trip planning."

    @pytest.mark.asyncio
    async def test_follow_up_continues_existing_topic(self, components, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        await store.insert_message(make_message("conv-1", "I want to plan a trip to Japan", topic_id=japan.id))
        routing_model.replies = [existing_reply("continue_active", japan.id)]

        decision = await components.engine.decide(
            "conv-1", "What's a realistic daily budget?", RouterContext(active_topic_id=japan.id)
        )

        assert decision.topic_action == "continue_active"
        assert decision.primary_topic_id == japan.id
        assert len(await store.list_topics("conv-1")) == 1

    @pytest.mark.asyncio
    async def test_unknown_ids_are_filtered(self, components, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        food = store.add_topic(make_topic("conv-1", "Tokyo Food"))
        routing_model.replies = [
            existing_reply(
                "continue_active",
                "topic-999",
                secondaryTopicIds=["topic-999", food.id, food.id, japan.id],
                artifactsToLoad=["artifact-404"],
            )
        ]

        decision = await components.engine.decide("conv-1", "Any ramen places near Shinjuku?")

        assert decision.primary_topic_id != "topic-999"
        assert decision.primary_topic_id is not None
        assert "topic-999" not in decision.secondary_topic_ids
        assert decision.secondary_topic_ids == [food.id, japan.id]
        assert decision.artifacts_to_load == []
        # the unknown primary is treated as absent, so a topic was opened for the turn
        assert len(await store.list_topics("conv-1")) == 3

    @pytest.mark.asyncio
    async def test_secondaries_capped_and_exclude_primary(self, components, routing_model, store):
        topics = [store.add_topic(make_topic("conv-1", f"Topic {i}")) for i in range(6)]
        ids = [t.id for t in topics]
        routing_model.replies = [existing_reply("continue_active", ids[0], secondaryTopicIds=ids)]

        decision = await components.engine.decide("conv-1", "compare everything")

        assert decision.primary_topic_id == ids[0]
        assert decision.secondary_topic_ids == ids[1:4]

    @pytest.mark.asyncio
    async def test_known_artifacts_kept_in_order(self, components, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        a1 = store.add_artifact(make_artifact("conv-1", "Japan itinerary", "Day 1 Tokyo", topic_id=japan.id))
        a2 = store.add_artifact(make_artifact("conv-1", "Japan budget sheet", "Hotels 120/night"))
        routing_model.replies = [existing_reply("continue_active", japan.id, artifactsToLoad=[a2.id, "nope", a1.id])]

        decision = await components.engine.decide("conv-1", "Update the japan itinerary and budget")

        assert decision.artifacts_to_load == [a2.id, a1.id]

    @pytest.mark.asyncio
    async def test_reopen_refreshes_metadata(self, components, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip", summary="old"))
        routing_model.replies = [
            existing_reply("reopen_existing", japan.id, newTopicSummary="Flights booked, hotels pending.")
        ]

        decision = await components.engine.decide("conv-1", "Back to Japan: hotels?")

        assert decision.topic_action == "reopen_existing"
        assert decision.primary_topic_id == japan.id
        refreshed = await store.get_topic(japan.id)
        assert refreshed.summary == "Flights booked, hotels pending."
        assert refreshed.label == "Japan Trip"

    @pytest.mark.asyncio
    async def test_subtopic_of_root_is_kept(self, components, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        routing_model.replies = [new_reply("Kyoto Temples", newParentTopicId=japan.id)]

        decision = await components.engine.decide("conv-1", "Which temples in Kyoto?")

        created = await store.get_topic(decision.primary_topic_id)
        assert created.parent_topic_id == japan.id
        assert decision.new_parent_topic_id == japan.id

    @pytest.mark.asyncio
    async def test_parent_that_is_a_subtopic_is_dropped(self, components, routing_model, store):
        root = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        child = store.add_topic(make_topic("conv-1", "Kyoto", parent_topic_id=root.id))
        routing_model.replies = [new_reply("Kyoto Temples", newParentTopicId=child.id)]

        decision = await components.engine.decide("conv-1", "Which temples in Kyoto?")

        created = await store.get_topic(decision.primary_topic_id)
        assert created.parent_topic_id is None


class TestRetryAndFallback:

    @pytest.mark.asyncio
    async def test_invalid_output_retried_with_nudge(self, components, routing_model):
        routing_model.replies = ["I think this is about Japan", new_reply("Japan Trip Planning")]

        decision = await components.engine.decide("conv-1", "I want to plan a trip to Japan")

        assert decision.routed_by == "llm"
        assert len(routing_model.calls) == 2
        assert SECOND_TRY_NUDGE not in routing_model.calls[0]["messages"][0]["content"]
        assert SECOND_TRY_NUDGE in routing_model.calls[1]["messages"][0]["content"]
        assert routing_model.calls[0]["schema_name"] == "router_decision"

    @pytest.mark.asyncio
    async def test_fenced_json_is_accepted(self, components, routing_model):
        routing_model.replies = ["```json\n" + json.dumps(new_reply("Japan Trip")) + "\n```"]

        decision = await components.engine.decide("conv-1", "Japan trip")

        assert decision.routed_by == "llm"
        assert len(routing_model.calls) == 1

    @pytest.mark.asyncio
    async def test_content_block_list_is_accepted(self, settings, store):
        def factory(schema_name, schema):
            return RunnableLambda(lambda msgs: AIMessage(
                content=[{"type": "text", "text": json.dumps(new_reply("Japan Trip Planning"))}]
            ))

        model = StructuredChat("fake", "fake-model", factory)
        components = build_components(settings, store=store, routing_model=model, build_clients=False)

        decision = await components.engine.decide("conv-1", "Plan a 5-day trip to Japan")

        assert decision.routed_by == "llm"
        assert (await store.get_topic(decision.primary_topic_id)).label == "Japan Trip Planning"

    @pytest.mark.asyncio
    async def test_non_text_output_falls_back(self, settings, store):
        class NonTextModel:
            provider = "fake"
            model = "fake-router"
            last_usage = {}

            async def ainvoke_json(self, messages, schema_name, schema):
                return 42

        components = build_components(settings, store=store, routing_model=NonTextModel(), build_clients=False)

        decision = await components.engine.decide("conv-1", "Plan a trip to Japan")

        assert decision.routed_by == "fallback"
        assert decision.topic_action == "new"

    @pytest.mark.asyncio
    async def test_new_without_label_fails_validation(self, components, routing_model):
        routing_model.replies = [new_reply(""), new_reply("")]

        decision = await components.engine.decide("conv-1", "Plan a trip to Japan")

        assert decision.routed_by == "fallback"
        assert len(routing_model.calls) == 2

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_recent_topic(self, components, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        await store.insert_message(make_message("conv-1", "Plan Japan", topic_id=japan.id, minute=1))
        await store.insert_message(make_message("conv-1", "Sure!", role="assistant", minute=2))
        routing_model.replies = [ConnectionError("boom"), ConnectionError("boom again")]

        decision = await components.engine.decide("conv-1", "And the budget?")

        assert decision.routed_by == "fallback"
        assert decision.topic_action == "continue_active"
        assert decision.primary_topic_id == japan.id
        assert len(routing_model.calls) == 2

    @pytest.mark.asyncio
    async def test_fallback_opens_topic_when_nothing_to_continue(self, settings, store):
        components = build_components(settings, store=store, build_clients=False)

        decision = await components.engine.decide("conv-1", "Hey, I need help with my resume formatting")

        assert decision.routed_by == "fallback"
        assert decision.topic_action == "new"
        created = await store.get_topic(decision.primary_topic_id)
        assert created.label == "Resume Formatting"
        assert created.description.endswith(".")

    @pytest.mark.asyncio
    async def test_model_timeout_counts_as_failure(self, settings, store):
        class SlowModel(FakeRoutingModel):
            async def ainvoke_json(self, messages, schema_name, schema):
                self.calls.append({"messages": messages})
                await asyncio.sleep(1)

        model = SlowModel()
        quick = with_overrides(settings, routing_model={"timeout_sec": 0.01})
        components = build_components(quick, store=store, routing_model=model, build_clients=False)

        decision = await components.engine.decide("conv-1", "Plan a trip to Japan")

        assert decision.routed_by == "fallback"
        assert len(model.calls) == 2

    @pytest.mark.asyncio
    async def test_candidate_read_failure_degrades(self, components, routing_model, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise ConnectionError("artifact index down")

        monkeypatch.setattr(store, "search_artifacts", broken)
        routing_model.replies = [new_reply("Japan Trip")]

        decision = await components.engine.decide("conv-1", "Japan trip")

        assert decision.topic_action == "new"


class TestCandidates:

    @pytest.mark.asyncio
    async def test_cross_chat_topics_offered_under_limit(self, components, routing_model, store):
        store.add_conversation(Conversation(id="conv-2", title="Old travel chat", user_id="user-1"))
        store.add_conversation(Conversation(id="conv-3", title="Someone else", user_id="user-2"))
        small = store.add_topic(make_topic("conv-2", "Japan Rail Pass", token_estimate=1_000))
        huge = store.add_topic(make_topic("conv-2", "Giant Thread", token_estimate=500_000))
        other_user = store.add_topic(make_topic("conv-3", "Not Yours", token_estimate=10))

        candidates = await components.engine.gather_candidates("conv-1", "rail pass", RouterContext(user_id="user-1"))

        ids = candidates.topic_ids
        assert small.id in ids
        assert huge.id not in ids
        assert other_user.id not in ids
        cross = [c for c in candidates.topics if c.id == small.id][0]
        assert cross.is_cross_conversation
        assert cross.conversation_title == "Old travel chat"

        routing_model.replies = [existing_reply("continue_active", small.id)]
        decision = await components.engine.decide("conv-1", "rail pass", RouterContext(user_id="user-1"))
        assert decision.primary_topic_id == small.id

    @pytest.mark.asyncio
    async def test_no_cross_chat_topics_without_owner(self, components, store):
        store.add_conversation(Conversation(id="conv-other", title="Private", user_id="user-2"))
        private = store.add_topic(make_topic("conv-other", "Private Medical Notes", token_estimate=10))

        candidates = await components.engine.gather_candidates("conv-1", "hello there", RouterContext())

        assert private.id not in candidates.topic_ids
        assert not any(c.is_cross_conversation for c in candidates.topics)

    @pytest.mark.asyncio
    async def test_prompt_lists_topics_and_semantic_hints(self, settings, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning", summary="japan itinerary"))
        store.add_topic(make_topic("conv-1", "Resume", summary="resume formatting"))
        model = FakeRoutingModel([existing_reply("continue_active", japan.id)])
        embedder = FakeEmbeddings({"japan": [1.0, 0.0, 0.0], "resume": [0.0, 1.0, 0.0]})
        components = build_components(settings, store=store, routing_model=model, embedder=embedder, build_clients=False)

        await components.engine.decide("conv-1", "More japan ideas", RouterContext(active_topic_id=japan.id))

        prompt = model.calls[0]["messages"][1]["content"]
        assert f"[{japan.id}] Japan Trip Planning (ACTIVE)" in prompt
        assert "Semantic similarity hints" in prompt
        assert f"[{japan.id}] topic Japan Trip Planning: 1.000" in prompt

    def test_extract_keywords(self):
        assert extract_keywords("Can you update the Japan itinerary & budget? ok") == [
            "update", "japan", "itinerary", "budget"
        ]
        assert extract_keywords("") == []
        assert len(extract_keywords("alpha bravo charlie delta echoes foxtrot golf hotel india juliet")) == 8


class TestPersistence:

    @pytest.mark.asyncio
    async def test_topic_write_failure_aborts_turn(self, settings):
        store = FailingStore()
        store.add_conversation(Conversation(id="conv-1", user_id="user-1"))
        model = FakeRoutingModel([new_reply("Japan Trip Planning")])
        components = build_components(settings, store=store, routing_model=model, build_clients=False)

        with pytest.raises(TopicPersistenceError) as exc:
            await components.engine.decide("conv-1", "Plan a trip to Japan")
        assert exc.value.conversation_id == "conv-1"

    @pytest.mark.asyncio
    async def test_metric_line_logged(self, components, routing_model, caplog):
        routing_model.replies = [new_reply("Japan Trip Planning")]
        with caplog.at_level(logging.INFO, logger="topic-router.routing"):
            await components.engine.decide("conv-1", "Plan a trip to Japan")
        metric = [r.getMessage() for r in caplog.records if r.getMessage().startswith("METRIC: ")]
        assert metric
        assert '"router_usage"' in metric[0]
        assert '"action": "new"' in metric[0]


class TestCapabilityProfile:

    @pytest.fixture
    def cap(self, settings, store, routing_model):
        return build_components(settings, store=store, routing_model=routing_model, profile="topic_capability", build_clients=False)

    @pytest.mark.asyncio
    async def test_pro_never_auto_selected(self, cap, routing_model):
        routing_model.replies = [capability_reply(new_reply("Architecture Review"), model="pro", effort="xhigh")]

        decision = await cap.engine.decide("conv-1", "Review this system architecture")

        assert routing_model.calls[0]["schema_name"] == "router_capability_decision"
        assert decision.model == "full"
        assert decision.effort == "xhigh"
        assert decision.model_id == "gpt-5.2"

    @pytest.mark.asyncio
    async def test_preference_by_model_id_wins(self, cap, routing_model):
        routing_model.replies = [capability_reply(new_reply("Quick Question"), model="full", effort="xhigh")]
        ctx = RouterContext(model_preference="gpt-5-nano")

        decision = await cap.engine.decide("conv-1", "quick question", ctx)

        assert decision.model == "nano"
        assert decision.effort == "high"
        assert decision.model_id == "gpt-5-nano"
        prompt = routing_model.calls[0]["messages"][1]["content"]
        assert 'User explicitly selected "nano"' in prompt

    @pytest.mark.asyncio
    async def test_instant_mode_uses_lowest_effort(self, cap, routing_model):
        routing_model.replies = [capability_reply(new_reply("Trip"), model="full", effort="high")]

        decision = await cap.engine.decide("conv-1", "trip", RouterContext(speed_mode="instant"))

        assert (decision.model, decision.effort) == ("full", "none")

    @pytest.mark.asyncio
    async def test_thinking_mode_raises_effort(self, cap, routing_model):
        routing_model.replies = [capability_reply(new_reply("Trip"), model="mini", effort="low")]

        decision = await cap.engine.decide("conv-1", "trip", RouterContext(speed_mode="thinking"))

        assert (decision.model, decision.effort) == ("mini", "medium")

    @pytest.mark.asyncio
    async def test_continue_without_active_topic_becomes_new(self, cap, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        routing_model.replies = [capability_reply(existing_reply("continue_active", japan.id))]

        decision = await cap.engine.decide("conv-1", "budget for japan")

        assert decision.topic_action == "new"
        assert decision.primary_topic_id != japan.id

    @pytest.mark.asyncio
    async def test_continue_uses_active_topic(self, cap, routing_model, store):
        japan = store.add_topic(make_topic("conv-1", "Japan Trip Planning"))
        other = store.add_topic(make_topic("conv-1", "Resume"))
        routing_model.replies = [capability_reply(existing_reply("continue_active", other.id))]

        decision = await cap.engine.decide("conv-1", "budget", RouterContext(active_topic_id=japan.id))

        assert decision.topic_action == "continue_active"
        assert decision.primary_topic_id == japan.id

    @pytest.mark.asyncio
    async def test_memory_types_filtered_to_available(self, cap, routing_model):
        routing_model.replies = [
            capability_reply(new_reply("Trip"), memory=["travel", "bogus", "travel", "work", "health", "food"])
        ]
        ctx = RouterContext(available_memory_types=["travel", "work", "health", "food"])

        decision = await cap.engine.decide("conv-1", "trip", ctx)

        assert decision.memory_types_to_load == ["travel", "work", "health"]

    @pytest.mark.asyncio
    async def test_fallback_uses_heuristic_capability(self, settings, store):
        cap = build_components(settings, store=store, profile="topic_capability", build_clients=False)

        decision = await cap.engine.decide("conv-1", "hi there", RouterContext(available_memory_types=["a", "b", "c", "d"]))

        assert decision.routed_by == "fallback"
        assert decision.topic_action == "new"
        assert (decision.model, decision.effort) == ("nano", "low")
        assert decision.model_id == "gpt-5-nano"
        assert decision.memory_types_to_load == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_fallback_capability_reads_the_message(self, settings, store):
        cap = build_components(settings, store=store, profile="topic_capability", build_clients=False)

        decision = await cap.engine.decide("conv-1", "def total(xs):\n    return sum(xs)")

        assert decision.routed_by == "fallback"
        assert (decision.model, decision.effort) == ("mini", "low")


def test_unknown_profile_rejected(settings):
    with pytest.raises(ValueError):
        build_components(settings, profile="capability_only", build_clients=False)
