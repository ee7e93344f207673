"""Tests for the order execution engine"""
