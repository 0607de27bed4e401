"""
Tests for request sequencing and the stale-response guard.
"""

from components.treemap.sequencing import RequestSequencer


class TestRequestSequencer:
    """Test RequestSequencer with manually completed futures."""

    def setup_method(self):
        self.applied = []
        self.failed = []

    def submit(self, sequencer, slot, value):
        return sequencer.submit(slot, lambda: value, on_success=self.applied.append,
                                on_error=self.failed.append)

    def test_sequence_numbers_increase(self, sequencer):
        first = self.submit(sequencer, 'roads', 'A')
        second = self.submit(sequencer, 'areas', 'B')

        assert second > first
        assert sequencer.latest('roads') == first
        assert sequencer.pending == 2

    def test_stale_response_dropped_when_it_arrives_last(self, sequencer, manual_executor):
        self.submit(sequencer, 'roads', 'A')
        self.submit(sequencer, 'roads', 'B')

        manual_executor.run(1)
        assert sequencer.process_completions() == 1
        manual_executor.run(0)
        assert sequencer.process_completions() == 0

        assert self.applied == ['B']
        assert sequencer.pending == 0

    def test_stale_response_dropped_when_it_arrives_first(self, sequencer, manual_executor):
        self.submit(sequencer, 'roads', 'A')
        self.submit(sequencer, 'roads', 'B')

        manual_executor.run(0)
        manual_executor.run(1)
        sequencer.process_completions()

        assert self.applied == ['B']

    def test_slots_are_independent(self, sequencer, manual_executor):
        self.submit(sequencer, 'roads', 'roads')
        self.submit(sequencer, 'search', 'search')

        manual_executor.run_all()
        sequencer.process_completions()

        assert sorted(self.applied) == ['roads', 'search']

    def test_invalidate_drops_in_flight_request(self, sequencer, manual_executor):
        self.submit(sequencer, 'buffer_hits', 'hits')
        sequencer.invalidate('buffer_hits')

        manual_executor.run_all()
        sequencer.process_completions()

        assert self.applied == []

    def test_error_goes_to_handler(self, sequencer, manual_executor):
        def boom():
            raise RuntimeError("service down")

        sequencer.submit('search', boom, on_success=self.applied.append, on_error=self.failed.append)
        manual_executor.run_all()
        sequencer.process_completions()

        assert self.applied == []
        assert len(self.failed) == 1
        assert str(self.failed[0]) == "service down"

    def test_stale_error_is_dropped(self, sequencer, manual_executor):
        def boom():
            raise RuntimeError("late failure")

        sequencer.submit('search', boom, on_success=self.applied.append, on_error=self.failed.append)
        self.submit(sequencer, 'search', 'fresh')

        manual_executor.run_all()
        sequencer.process_completions()

        assert self.failed == []
        assert self.applied == ['fresh']

    def test_error_without_handler_is_logged(self, sequencer, manual_executor, caplog):
        def boom():
            raise RuntimeError("unhandled")

        sequencer.submit('layer', boom, on_success=self.applied.append)
        manual_executor.run_all()
        sequencer.process_completions()

        assert "unhandled" in caplog.text

    def test_wait_idle_with_thread_pool(self):
        sequencer = RequestSequencer(max_workers=2)
        try:
            for value in range(3):
                self.submit(sequencer, f'slot{value}', value)

            applied = sequencer.wait_idle(timeout=5)

            assert applied == 3
            assert sorted(self.applied) == [0, 1, 2]
            assert sequencer.pending == 0
        finally:
            sequencer.shutdown()
