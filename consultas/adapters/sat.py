from consultas.adapters.base import (
    ASPNET_ANTI_FORGERY_FIELDS,
    ChallengeHints,
    SearchField,
    SiteAdapter,
    SolveConstraints,
)
from consultas.models import SearchMode

# Página específica de captura de vehículos (versión actual)
URL_SAT = "https://www.sat.gob.pe/VirtualSAT/modulos/Capturas.aspx?tri=C"

SAT_CAPTURAS = SiteAdapter(
    target_id="sat_capturas",
    name="SAT Lima - Capturas de vehículos",
    category="infraction",
    search_url=URL_SAT,
    search_modes={
        SearchMode.PLATE: SearchField(
            input_selectors=(
                "#ctl00_cplPrincipal_txtPlaca",
                "input[name='ctl00$cplPrincipal$txtPlaca']",
                "input[placeholder='Ingresar Placa']",
                "input[placeholder*='Placa' i]",
            ),
        ),
    },
    form_selectors=(
        "#ctl00_cplPrincipal_txtPlaca",
        "input[name='ctl00$cplPrincipal$txtPlaca']",
        "input[placeholder*='Placa' i]",
    ),
    submit_selectors=(
        "#ctl00_cplPrincipal_CaptchaContinue",
        "input[type='submit'][value='Buscar']",
        "button:has-text('Buscar')",
    ),
    # Captchas en Capturas.aspx vienen como ../controles/JpegImage_VB.aspx con class captcha_class
    challenge=ChallengeHints(
        kind="image",
        image_selectors=(
            "img[id*='imgCaptcha']",
            "img.captcha_class",
            "img[src*='JpegImage_VB']",
        ),
        input_selectors=(
            "#ctl00_cplPrincipal_txtCaptcha",
            "input[placeholder*='seguridad' i]",
        ),
        grayscale=True,
        constraints=SolveConstraints(min_length=4, max_length=6),
    ),
    result_selectors=(
        "#ctl00_cplPrincipal_grdCapturas",
        "#ctl00_cplPrincipal_lblMensajeVacio",
        "#ctl00_cplPrincipal_lblMensajeCapcha",
    ),
    table_selectors=(
        "#ctl00_cplPrincipal_grdCapturas",
        "table[id*='grdCapturas' i]",
    ),
    no_data_markers=("no se encontraron capturas", "no tiene orden de captura"),
    captcha_error_markers=("codigo de seguridad no es valido",),
    anti_forgery_fields=ASPNET_ANTI_FORGERY_FIELDS,
    field_map={
        "number": ("documento", "referencia"),
        "date": ("fecha", "anio", "ano"),
        "description": ("concepto",),
        "amount": ("monto captura", "monto"),
        "status": ("estado",),
    },
)
