"""Lifecycle pipeline services"""
