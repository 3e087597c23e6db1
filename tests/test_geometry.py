"""
Dropzone gate and size classification tests.

Run with: pytest tests/test_geometry.py -v
"""
from sorter.geometry import SizeCategory, classify_size, has_arrived, trigger_x
from sorter.vision import BoundingBox


class TestClassifySize:

    def test_wider_than_threshold_is_large(self):
        assert classify_size(350, 300) is SizeCategory.LARGE

    def test_narrower_is_small(self):
        assert classify_size(250, 300) is SizeCategory.SMALL

    def test_equal_to_threshold_is_small(self):
        assert classify_size(300, 300) is SizeCategory.SMALL


class TestHasArrived:

    def test_trigger_line_default_fraction(self):
        assert trigger_x(640, 0.375) == 240

    def test_centre_short_of_line(self):
        # trigger 240, box centre at 220
        assert not has_arrived(BoundingBox(200, 0, 40, 40), 480, 0.5)

    def test_centre_past_line(self):
        assert has_arrived(BoundingBox(225, 0, 40, 40), 480, 0.5)

    def test_exactly_on_boundary_counts(self):
        # 240 - 40/2 = 220
        assert has_arrived(BoundingBox(220, 0, 40, 40), 480, 0.5)
        assert not has_arrived(BoundingBox(219, 0, 40, 40), 480, 0.5)

    def test_odd_width_uses_true_half(self):
        # 240 - 41/2 = 219.5
        assert has_arrived(BoundingBox(220, 0, 41, 10), 480, 0.5)
        assert not has_arrived(BoundingBox(219, 0, 41, 10), 480, 0.5)

    def test_same_inputs_same_answer(self):
        box = BoundingBox(230, 10, 60, 60)
        assert has_arrived(box, 640, 0.375) == has_arrived(box, 640, 0.375)
