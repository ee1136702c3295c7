"""Billing domain - daily billing pipeline, notifications and alerts"""
