"""Request dependencies: process-lifetime services held on app.state."""

from fastapi import Request

from pwa_maker.services import ApkBuilder, BuildStore, BuildTokenIssuer


def get_build_store(request: Request) -> BuildStore:
    return request.app.state.build_store


def get_token_issuer(request: Request) -> BuildTokenIssuer:
    return request.app.state.token_issuer


def get_builder(request: Request) -> ApkBuilder:
    return request.app.state.builder
