"""Buyer Agent - escrows payment and settles finalized tasks."""

from .controller import BuyerController
