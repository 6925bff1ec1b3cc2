"""Domain services: conversion, aggregation, merge and orchestration."""
