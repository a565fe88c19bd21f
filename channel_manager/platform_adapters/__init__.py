from .airbnb_adapter import AirbnbAdapter
from .booking_com_adapter import BookingComAdapter
from .expedia_adapter import ExpediaAdapter

__all__ = ["AirbnbAdapter", "BookingComAdapter", "ExpediaAdapter"]
