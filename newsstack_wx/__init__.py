"""newsstack_wx – weather news aggregation engine.

Polls government alert feeds (NWS, SPC, NHC), broadcast and agency RSS
(FOX Weather, NASA), Reddit communities, NewsAPI and NOAA model graphics
concurrently; normalises, deduplicates and ranks the items into one feed
served from a stale-while-revalidate cache.

Entry point for hosts is ``newsstack_wx.pipeline.AggregationEngine``;
``python -m newsstack_wx.run`` is a standalone CLI/poller.
"""
