"""Shared test helpers for the P2P engine tests"""
