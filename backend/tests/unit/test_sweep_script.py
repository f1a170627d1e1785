"""
Unit tests for the reconciliation sweep script's argument parsing.
"""

import pytest

from scripts.run_reconciliation_sweep import build_parser


class TestSweepScriptArguments:

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.subscription is None
        assert args.limit is None

    def test_single_subscription_with_limit(self):
        args = build_parser().parse_args(["--subscription", "sub_123", "--limit", "100"])
        assert args.subscription == "sub_123"
        assert args.limit == 100

    @pytest.mark.parametrize("limit", ["0", "101", "500", "ten"])
    def test_rejects_limit_outside_stripe_page_size(self, limit):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--limit", limit])
