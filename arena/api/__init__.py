"""HTTP API and live event stream"""
