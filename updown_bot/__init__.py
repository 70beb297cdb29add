"""Decision engine for short-duration crypto up/down binary markets.

Streams a reference price per asset, compares it with the market
window's staked start price and decides whether to buy UP or DOWN
shares, how many, and at what limit price.

Usage::

    python3 -m updown_bot --paper --duration-minutes 30
"""
