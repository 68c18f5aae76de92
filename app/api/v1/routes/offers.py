from fastapi import APIRouter, Depends

from app.api.deps import get_kv, get_provider
from app.schemas.offers import OfferVerifyRequest, VerifiedOfferOut
from app.services.kv_store import KeyValueStore
from app.services.offer_service import get_verified_offer, to_out, verify_offer

router = APIRouter(tags=["offers"])


@router.post("/offers/{offer_id}/verify", response_model=VerifiedOfferOut)
def verify(offer_id: str, body: OfferVerifyRequest,
           kv: KeyValueStore = Depends(get_kv),
           provider=Depends(get_provider)):
    return to_out(verify_offer(kv, provider, offer_id, body.flightOffer))


@router.get("/offers/{offer_id}/verified", response_model=VerifiedOfferOut)
def verified(offer_id: str, kv: KeyValueStore = Depends(get_kv)):
    return to_out(get_verified_offer(kv, offer_id))
