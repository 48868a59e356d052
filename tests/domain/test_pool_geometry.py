import json
import unittest

from keypool.domain import PoolGeometry


class TestPoolGeometryExtent(unittest.TestCase):
    def test_pooled_extent_matches_formula(self):
        g = PoolGeometry(
            window_width=3,
            window_height=2,
            stride_x=2,
            stride_y=1,
            pad_left=1,
            pad_right=2,
            pad_top=0,
            pad_bottom=1,
        )
        # width: floor((7 + 1 + 2 - 3) / 2) + 1 = 4 ; height: floor((5 + 0 + 1 - 2) / 1) + 1 = 5
        self.assertEqual(g.pooled_extent(7, 5), (4, 5))

    def test_pooled_extent_unpadded_2x2_stride_2(self):
        g = PoolGeometry.square(2, 2, 0)
        self.assertEqual(g.pooled_extent(4, 4), (2, 2))
        self.assertEqual(g.pooled_extent(5, 5), (2, 2))

    def test_pooled_extent_rejects_input_smaller_than_window(self):
        g = PoolGeometry.square(3)
        with self.assertRaises(ValueError):
            g.pooled_extent(2, 5)

    def test_window_size(self):
        self.assertEqual(PoolGeometry(window_width=4, window_height=3).window_size, 12)


class TestPoolGeometryValidation(unittest.TestCase):
    def test_rejects_non_positive_window(self):
        with self.assertRaises(ValueError):
            PoolGeometry(window_width=0, window_height=2)

    def test_rejects_non_positive_stride(self):
        with self.assertRaises(ValueError):
            PoolGeometry(window_width=2, window_height=2, stride_y=0)

    def test_rejects_negative_padding(self):
        with self.assertRaises(ValueError):
            PoolGeometry(window_width=2, window_height=2, pad_top=-1)

    def test_rejects_padding_as_large_as_window(self):
        # a window fully inside padding would be empty
        with self.assertRaises(ValueError):
            PoolGeometry(window_width=2, window_height=2, pad_right=2)

    def test_is_frozen(self):
        g = PoolGeometry.square(2)
        with self.assertRaises(Exception):
            g.stride_x = 3  # type: ignore[misc]


class TestPoolGeometrySquare(unittest.TestCase):
    def test_stride_defaults_to_kernel(self):
        g = PoolGeometry.square(3)
        self.assertEqual(g.stride, (3, 3))
        self.assertEqual(g.padding, (0, 0, 0, 0))

    def test_pairs_are_height_width(self):
        g = PoolGeometry.square((2, 3), stride=(1, 2), padding=(1, 0))
        self.assertEqual(g.window, (2, 3))
        self.assertEqual(g.stride, (1, 2))
        self.assertEqual(g.padding, (1, 1, 0, 0))


class TestPoolGeometryConfig(unittest.TestCase):
    def test_get_config_is_json_serializable(self):
        g = PoolGeometry(
            window_width=3, window_height=2, stride_x=2, pad_left=1, pad_bottom=1
        )
        cfg = g.get_config()
        self.assertEqual(
            cfg,
            {"window": [2, 3], "stride": [1, 2], "padding": [0, 1, 1, 0]},
        )
        restored = PoolGeometry.from_config(json.loads(json.dumps(cfg)))
        self.assertEqual(restored, g)

    def test_from_config_accepts_symmetric_padding(self):
        g = PoolGeometry.from_config(
            {"window": [3, 3], "stride": [2, 2], "padding": [1, 2]}
        )
        self.assertEqual(g.padding, (1, 1, 2, 2))

    def test_from_config_rejects_bad_padding_length(self):
        with self.assertRaises(ValueError):
            PoolGeometry.from_config(
                {"window": [3, 3], "stride": [1, 1], "padding": [1, 1, 1]}
            )


if __name__ == "__main__":
    unittest.main()
