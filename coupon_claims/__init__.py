"""Coupon claims service: one coupon per identity per cooldown window."""
