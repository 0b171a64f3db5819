"""Unit tests for network cloudlet stages and AppCloudlet validation."""

import pytest

from cloudlet import AppCloudlet, NetworkCloudlet, StageKind
from exceptions import StageMismatch
from Runner import create_tandem_app


def make_app(*cloudlet_ids):
    app = AppCloudlet(AppCloudlet.APP_WORKFLOW, 0, deadline=2000, user_id=7)
    cloudlets = [app.add_cloudlet(NetworkCloudlet(i)) for i in cloudlet_ids]
    return app, cloudlets


class TestNetworkCloudlet:
    def test_execution_stages_define_the_length(self):
        cloudlet = NetworkCloudlet(0)
        cloudlet.add_execution_stage(300)
        cloudlet.add_execution_stage(200)
        assert cloudlet.length == 500
        assert cloudlet.remaining == 500

    def test_invalid_stage_sizes_raise(self):
        cloudlet, peer = NetworkCloudlet(0), NetworkCloudlet(1)
        with pytest.raises(ValueError):
            cloudlet.add_execution_stage(0)
        with pytest.raises(ValueError):
            cloudlet.add_send_stage(0, peer)
        with pytest.raises(ValueError):
            cloudlet.add_recv_stage(peer, -5)

    def test_repeated_stages_with_one_peer_are_numbered(self):
        cloudlet, peer = NetworkCloudlet(0), NetworkCloudlet(1)
        cloudlet.add_send_stage(10, peer)
        cloudlet.add_execution_stage(5)
        cloudlet.add_send_stage(20, peer)
        assert [s.ordinal for s in cloudlet.stages if s.kind == StageKind.SEND] == [0, 1]

    def test_advance_stage_walks_the_list_in_order(self):
        cloudlet, peer = NetworkCloudlet(0), NetworkCloudlet(1)
        cloudlet.add_execution_stage(100)
        cloudlet.add_send_stage(50, peer)
        cloudlet.prepare()
        assert cloudlet.advance_stage(0.0).kind == StageKind.EXECUTION
        assert cloudlet.advance_stage(10.0).kind == StageKind.SEND
        assert cloudlet.advance_stage(12.0) is None
        assert cloudlet.stages[1].start_time == cloudlet.stages[0].finish_time == 10.0


class TestAppCloudlet:
    def test_tandem_app_is_valid(self):
        app = create_tandem_app(0, user_id=3, first_cloudlet_id=10)
        cla, clb = app.cloudlets
        assert app.validate()
        assert app.sends_to() == [(10, 11)]
        assert app.receives_from() == [(11, 10)]
        assert clb.stages[0].amount == 1000
        assert cla.user_id == clb.user_id == 3
        assert cla.app is app

    def test_send_to_an_outsider_raises(self):
        app, (a,) = make_app(0)
        a.add_send_stage(10, NetworkCloudlet(99))
        with pytest.raises(StageMismatch):
            app.validate()

    def test_send_without_receive_raises(self):
        app, (a, b) = make_app(0, 1)
        a.add_send_stage(10, b)
        with pytest.raises(StageMismatch):
            app.validate()

    def test_receive_without_send_raises(self):
        app, (a, b) = make_app(0, 1)
        b.add_recv_stage(a)
        with pytest.raises(StageMismatch):
            app.validate()

    def test_size_disagreement_raises(self):
        app, (a, b) = make_app(0, 1)
        a.add_send_stage(1000, b)
        b.add_recv_stage(a, 500)
        with pytest.raises(StageMismatch):
            app.validate()

    def test_circular_wait_raises(self):
        """Both cloudlets receive before they send: neither can ever proceed."""
        app, (a, b) = make_app(0, 1)
        a.add_recv_stage(b)
        a.add_send_stage(10, b)
        b.add_recv_stage(a)
        b.add_send_stage(10, a)
        with pytest.raises(StageMismatch):
            app.validate()

    def test_request_reply_is_not_a_cycle(self):
        app, (a, b) = make_app(0, 1)
        a.add_send_stage(10, b)
        a.add_recv_stage(b)
        b.add_recv_stage(a)
        b.add_execution_stage(100)
        b.add_send_stage(20, a)
        assert app.validate()
        assert a.stages[1].amount == 20

    def test_stage_graph_merges_each_transfer(self):
        app = create_tandem_app(0, user_id=3, first_cloudlet_id=0)
        graph = app.stage_graph()
        # EXEC(A) -> transfer -> EXEC(B)
        assert graph.number_of_nodes() == 3
        assert graph.number_of_edges() == 2
