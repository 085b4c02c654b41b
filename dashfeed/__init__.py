"""dashfeed: live market data distribution for trading dashboards."""
