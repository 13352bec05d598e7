"""Participant call state machine.

Warning:
    [`peercall.call.rtc`][peercall.call.rtc] requires the `rtc` extras
    (`#!bash pip install peercall[rtc]`).
"""
