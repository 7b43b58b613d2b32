# Copyright (c) 2026 John Earle
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Globally protected brands and the character substitution table."""
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Brand:
    domain: str
    name: str
    category: str = ""
    aliases: tuple = field(default_factory=tuple)

    @property
    def base(self) -> str:
        """Label before the first dot: 'paypal' for 'paypal.com'."""
        return self.domain.split(".")[0].lower()


PROTECTED_BRANDS: tuple[Brand, ...] = (
    # Financial services
    Brand("paypal.com", "PayPal", "financial"),
    Brand("bankofamerica.com", "Bank of America", "financial", ("bofa", "boa")),
    Brand("chase.com", "Chase", "financial", ("jpmorgan",)),
    Brand("wellsfargo.com", "Wells Fargo", "financial"),
    Brand("capitalone.com", "Capital One", "financial"),
    Brand("citi.com", "Citibank", "financial", ("citibank",)),
    Brand("americanexpress.com", "American Express", "financial", ("amex",)),
    Brand("discover.com", "Discover", "financial"),
    Brand("fidelity.com", "Fidelity", "financial"),
    Brand("schwab.com", "Charles Schwab", "financial"),
    Brand("vanguard.com", "Vanguard", "financial"),
    Brand("tdameritrade.com", "TD Ameritrade", "financial"),
    Brand("usbank.com", "US Bank", "financial"),
    Brand("pnc.com", "PNC Bank", "financial"),
    Brand("stripe.com", "Stripe", "financial"),

    # Tech
    Brand("microsoft.com", "Microsoft", "tech"),
    Brand("apple.com", "Apple", "tech", ("icloud",)),
    Brand("google.com", "Google", "tech", ("gmail", "youtube")),
    Brand("amazon.com", "Amazon", "tech", ("aws",)),
    Brand("meta.com", "Meta", "tech", ("facebook",)),
    Brand("netflix.com", "Netflix", "tech"),
    Brand("adobe.com", "Adobe", "tech"),
    Brand("oracle.com", "Oracle", "tech"),
    Brand("salesforce.com", "Salesforce", "tech"),
    Brand("dropbox.com", "Dropbox", "tech"),
    Brand("zoom.us", "Zoom", "tech"),
    Brand("slack.com", "Slack", "tech"),

    # E-commerce
    Brand("ebay.com", "eBay", "ecommerce"),
    Brand("walmart.com", "Walmart", "ecommerce"),
    Brand("target.com", "Target", "ecommerce"),
    Brand("bestbuy.com", "Best Buy", "ecommerce"),
    Brand("costco.com", "Costco", "ecommerce"),
    Brand("homedepot.com", "Home Depot", "ecommerce"),
    Brand("etsy.com", "Etsy", "ecommerce"),
    Brand("aliexpress.com", "AliExpress", "ecommerce"),

    # Social
    Brand("linkedin.com", "LinkedIn", "social"),
    Brand("twitter.com", "Twitter", "social", ("x",)),
    Brand("instagram.com", "Instagram", "social"),
    Brand("tiktok.com", "TikTok", "social"),
    Brand("pinterest.com", "Pinterest", "social"),
    Brand("reddit.com", "Reddit", "social"),

    # Enterprise software
    Brand("docusign.com", "DocuSign", "enterprise"),
    Brand("servicenow.com", "ServiceNow", "enterprise"),
    Brand("workday.com", "Workday", "enterprise"),
    Brand("atlassian.com", "Atlassian", "enterprise", ("jira", "confluence")),
    Brand("hubspot.com", "HubSpot", "enterprise"),
    Brand("zendesk.com", "Zendesk", "enterprise"),
    Brand("intuit.com", "Intuit", "enterprise", ("quickbooks", "turbotax")),
    Brand("github.com", "GitHub", "enterprise"),

    # Shipping
    Brand("fedex.com", "FedEx", "shipping"),
    Brand("ups.com", "UPS", "shipping"),
    Brand("usps.com", "USPS", "shipping"),
    Brand("dhl.com", "DHL", "shipping"),
    Brand("ontrac.com", "OnTrac", "shipping"),

    # Telecom
    Brand("att.com", "AT&T", "telecom"),
    Brand("verizon.com", "Verizon", "telecom"),
    Brand("t-mobile.com", "T-Mobile", "telecom"),
    Brand("xfinity.com", "Xfinity", "telecom", ("comcast",)),
    Brand("spectrum.com", "Spectrum", "telecom"),

    # Media
    Brand("spotify.com", "Spotify", "media"),
    Brand("hulu.com", "Hulu", "media"),
    Brand("disneyplus.com", "Disney+", "media", ("disney",)),
    Brand("hbomax.com", "HBO Max", "media", ("hbo",)),
    Brand("peacocktv.com", "Peacock", "media"),
)


# Characters an attacker can substitute for the key character
HOMOGLYPHS: dict[str, tuple[str, ...]] = {
    "a": ("а", "ɑ", "α", "@", "ａ", "ä", "à", "á", "â", "ã"),
    "b": ("ƅ", "Ь", "ｂ", "ḃ"),
    "c": ("с", "ϲ", "¢", "ｃ", "ç"),
    "d": ("ԁ", "ɗ", "ｄ", "ḋ"),
    "e": ("е", "ё", "℮", "ｅ", "é", "è", "ê", "ë"),
    "f": ("ｆ", "ƒ"),
    "g": ("ɡ", "ց", "ｇ", "ġ"),
    "h": ("һ", "հ", "ｈ", "ḣ"),
    "i": ("і", "ı", "1", "l", "|", "ｉ", "í", "ì", "î", "ï"),
    "j": ("ј", "ʝ", "ｊ"),
    "k": ("κ", "ķ", "ｋ", "ḱ"),
    "l": ("ӏ", "ɭ", "1", "i", "|", "ｌ", "ĺ"),
    "m": ("м", "ṃ", "ｍ", "ṁ"),
    "n": ("ո", "ņ", "ｎ", "ń", "ñ"),
    "o": ("о", "ο", "0", "ө", "ｏ", "ó", "ò", "ô", "ö", "õ"),
    "p": ("р", "ρ", "ｐ"),
    "q": ("ԛ", "գ", "ｑ"),
    "r": ("г", "ɾ", "ｒ", "ŕ"),
    "s": ("ѕ", "ꜱ", "$", "ｓ", "ś", "š"),
    "t": ("т", "ţ", "ｔ", "ṫ"),
    "u": ("υ", "ս", "ｕ", "ú", "ù", "û", "ü"),
    "v": ("ѵ", "ν", "ｖ"),
    "w": ("ѡ", "ω", "ｗ", "ẃ"),
    "x": ("х", "χ", "ｘ"),
    "y": ("у", "ү", "ｙ", "ý", "ÿ"),
    "z": ("ᴢ", "ʐ", "ｚ", "ż", "ź"),
    "0": ("о", "ο", "O", "０"),
    "1": ("l", "i", "I", "|", "１"),
    "2": ("２", "ƨ"),
    "3": ("３", "з"),
    "4": ("４",),
    "5": ("５", "ƽ"),
    "6": ("６", "б"),
    "7": ("７",),
    "8": ("８",),
    "9": ("９", "g"),
}

# Affixes attackers bolt onto a brand name ("secure-paypal", "paypal-login")
COUSIN_AFFIXES: tuple[str, ...] = (
    "secure-", "login-", "my-", "account-", "support-", "help-",
    "service-", "online-", "portal-", "mail-", "web-", "app-",
    "-secure", "-login", "-verify", "-account", "-support", "-help",
    "-service", "-online", "-portal", "-access", "-update", "-alert",
)
