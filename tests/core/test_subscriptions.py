"""
Subscription Table and topic validation tests.
"""
import pytest

from mqtt5_async.core.subscriptions import (
    Subscription,
    SubscriptionTable,
    validate_topic_filter,
    validate_topic_name,
)


def confirmed(table: SubscriptionTable, packet_id: int, topic_filter: str, qos: int = 1, callback=None):
    table.stage_subscribe(packet_id, Subscription(topic_filter=topic_filter, qos=qos, callback=callback))
    return table.confirm_subscribe(packet_id, qos)


# ============================================================================
# TOPIC VALIDATION
# ============================================================================


class TestTopicValidation:
    @pytest.mark.parametrize("topic", ["a", "a/b/c", "/leading", "trailing/", "$SYS/broker", "unicode/ünï"])
    def test_valid_topic_names(self, topic):
        assert validate_topic_name(topic) == topic

    @pytest.mark.parametrize("topic", ["", "a/+/c", "a/#", "nul\x00byte", "a" * 65536])
    def test_invalid_topic_names(self, topic):
        with pytest.raises(ValueError):
            validate_topic_name(topic)

    def test_topic_name_must_be_string(self):
        with pytest.raises(ValueError):
            validate_topic_name(b"bytes/topic")

    @pytest.mark.parametrize("topic_filter", ["#", "+", "a/+/c", "a/#", "+/+/#", "$share/group/a/+"])
    def test_valid_filters(self, topic_filter):
        assert validate_topic_filter(topic_filter) == topic_filter

    @pytest.mark.parametrize("topic_filter", [
        "",
        "a/#/c",        # '#' not last
        "a/b#",         # '#' shares a level
        "a+/b",         # '+' shares a level
        "$share/group",  # no filter after the group
        "$share//a",    # empty group
        "$share/gr+up/a",  # wildcard in the group name
    ])
    def test_invalid_filters(self, topic_filter):
        with pytest.raises(ValueError):
            validate_topic_filter(topic_filter)


# ============================================================================
# SUBSCRIBE / UNSUBSCRIBE LIFECYCLE
# ============================================================================


class TestLifecycle:
    def test_staged_subscription_does_not_route(self):
        table = SubscriptionTable()
        table.stage_subscribe(1, Subscription(topic_filter="a/b", qos=1))
        assert table.route("a/b") is None
        assert "a/b" not in table

        subscription = table.confirm_subscribe(1, 1)
        assert table.route("a/b") is subscription
        assert len(table) == 1

    def test_granted_qos_recorded(self):
        table = SubscriptionTable()
        table.stage_subscribe(1, Subscription(topic_filter="a/b", qos=2))
        subscription = table.confirm_subscribe(1, 0)
        assert subscription.qos == 2
        assert subscription.granted_qos == 0

    def test_abandon_refused_subscription(self):
        table = SubscriptionTable()
        table.stage_subscribe(1, Subscription(topic_filter="a/b", qos=1))
        assert table.abandon(1).topic_filter == "a/b"
        assert table.confirm_subscribe(1, 1) is None
        assert len(table) == 0

    def test_filter_routes_until_unsuback(self):
        table = SubscriptionTable()
        confirmed(table, 1, "a/+")
        table.stage_unsubscribe(2, "a/+")
        assert table.route("a/b") is not None

        assert table.confirm_unsubscribe(2) == "a/+"
        assert table.route("a/b") is None
        assert table.confirm_unsubscribe(2) is None

    def test_unsubscribe_unknown_filter(self):
        table = SubscriptionTable()
        table.stage_unsubscribe(3, "never/subscribed")
        assert table.confirm_unsubscribe(3) == "never/subscribed"
        assert len(table) == 0

    def test_resubscribe_replaces_callback(self):
        table = SubscriptionTable()
        first = confirmed(table, 1, "a/b", callback=print)
        second = confirmed(table, 2, "a/b", callback=repr)
        assert len(table) == 1
        assert table.route("a/b").callback is repr
        assert second.sequence == first.sequence

    def test_discard_staged_keeps_active(self):
        table = SubscriptionTable()
        confirmed(table, 1, "a/b")
        table.stage_subscribe(2, Subscription(topic_filter="c/d", qos=0))
        table.stage_unsubscribe(3, "a/b")
        table.discard_staged()
        assert table.confirm_subscribe(2, 0) is None
        assert table.confirm_unsubscribe(3) is None
        assert "a/b" in table

    def test_clear(self):
        table = SubscriptionTable()
        confirmed(table, 1, "a/#")
        table.clear()
        assert table.route("a/b") is None
        assert table.active() == []


# ============================================================================
# ROUTING
# ============================================================================


class TestRouting:
    def test_most_specific_filter_wins(self):
        table = SubscriptionTable()
        confirmed(table, 1, "#")
        confirmed(table, 2, "sensors/#")
        confirmed(table, 3, "sensors/+/temp")
        confirmed(table, 4, "sensors/kitchen/temp")

        assert table.route("sensors/kitchen/temp").topic_filter == "sensors/kitchen/temp"
        assert table.route("sensors/hall/temp").topic_filter == "sensors/+/temp"
        assert table.route("sensors/hall/humidity").topic_filter == "sensors/#"
        assert table.route("other").topic_filter == "#"

    def test_single_level_preferred_over_multi_level(self):
        table = SubscriptionTable()
        confirmed(table, 1, "a/#")
        confirmed(table, 2, "a/+")
        assert table.route("a/b").topic_filter == "a/+"

    def test_filter_without_multi_level_wins_before_counting_single_levels(self):
        table = SubscriptionTable()
        confirmed(table, 1, "a/+/#")
        confirmed(table, 2, "a/+/+")
        assert table.route("a/b/c").topic_filter == "a/+/+"

    def test_oldest_subscription_breaks_ties(self):
        table = SubscriptionTable()
        confirmed(table, 1, "+/b")
        confirmed(table, 2, "a/+")
        assert table.route("a/b").topic_filter == "+/b"

    def test_multi_level_matches_parent(self):
        table = SubscriptionTable()
        confirmed(table, 1, "a/#")
        assert table.route("a").topic_filter == "a/#"

    def test_wildcards_skip_dollar_topics(self):
        table = SubscriptionTable()
        confirmed(table, 1, "#")
        confirmed(table, 2, "+/broker")
        assert table.route("$SYS/broker") is None
        confirmed(table, 3, "$SYS/#")
        assert table.route("$SYS/broker").topic_filter == "$SYS/#"

    def test_shared_subscription_routes_on_inner_filter(self):
        table = SubscriptionTable()
        confirmed(table, 1, "$share/workers/jobs/+")
        assert table.route("jobs/42").topic_filter == "$share/workers/jobs/+"

    def test_shared_and_plain_filters_coexist(self):
        table = SubscriptionTable()
        confirmed(table, 1, "jobs/+")
        confirmed(table, 2, "$share/workers/jobs/+")
        table.stage_unsubscribe(3, "jobs/+")
        table.confirm_unsubscribe(3)
        assert table.route("jobs/42").topic_filter == "$share/workers/jobs/+"
