"""
Fusion stages of the timeline pipeline

All stages are pure and synchronous:
- movement: moving/stationary classification of a sample window
- place_inference: cached inferred places matched onto hourly summaries
- location_blocks: hourly summaries grouped into place/activity blocks
- gap_filler: blocks converted to calendar events with gaps filled
- timeline_builder: apps, communications and calendar merged into one day view
"""
